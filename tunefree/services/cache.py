"""Resolution caches (TTLCache for parse results, LRUCache for lyrics)."""

import logging
import time
from typing import Any, Callable, Optional, Tuple

from cachetools import LRUCache, TTLCache

from tunefree.core.config import CACHE_MAXSIZE, PARSE_CACHE_TTL

logger = logging.getLogger(__name__)

_MISSING = object()


def build_parse_cache_key(platform: str, song_id: Any, quality: str) -> Tuple[str, str, str]:
    return (platform, str(song_id), str(quality))


def build_lyric_cache_key(platform: str, song_id: Any) -> Tuple[str, str]:
    return (platform, str(song_id))


class ResolutionCache:
    """
    Best-effort caches for the resolution layer.

    - parse results keyed by (platform, id, quality), expiring after ``parse_ttl``
    - lyric text keyed by (platform, id), kept for the process lifetime
      (bounded by ``maxsize``, least recently used evicted first)

    Concurrent resolutions of one key may both write; the later write wins.
    """

    def __init__(self, parse_ttl: float = PARSE_CACHE_TTL, maxsize: int = CACHE_MAXSIZE,
                 timer: Callable[[], float] = time.monotonic):
        self._parse: TTLCache = TTLCache(maxsize=maxsize, ttl=parse_ttl, timer=timer)
        self._lyrics: LRUCache = LRUCache(maxsize=maxsize)

    def get_parse(self, platform: str, song_id: Any, quality: str) -> Optional[Any]:
        value = self._parse.get(build_parse_cache_key(platform, song_id, quality), _MISSING)
        if value is _MISSING:
            return None
        logger.debug(f"Parse cache hit for {platform}:{song_id}@{quality}")
        return value

    def set_parse(self, platform: str, song_id: Any, quality: str, value: Any) -> None:
        self._parse[build_parse_cache_key(platform, song_id, quality)] = value

    def get_lyric(self, platform: str, song_id: Any) -> Optional[str]:
        return self._lyrics.get(build_lyric_cache_key(platform, song_id))

    def set_lyric(self, platform: str, song_id: Any, lyric: str) -> None:
        self._lyrics[build_lyric_cache_key(platform, song_id)] = lyric

    def clear(self) -> None:
        self._parse.clear()
        self._lyrics.clear()

    def __len__(self) -> int:
        return len(self._parse) + len(self._lyrics)
