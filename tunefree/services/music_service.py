import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from tunefree.core.config import enabled_platforms
from tunefree.core.urls import fix_url
from tunefree.schemas.models import AudioQuality, Platform, PlaybackResult, PlaylistDetail, Song, TopList
from tunefree.services.cache import ResolutionCache
from tunefree.services.executor import MethodExecutor
from tunefree.services.extractors import extract_list
from tunefree.services.normalizer import (
    TEMP_ID_PREFIX,
    merge_round_robin,
    missing_cover,
    normalize_songs,
    normalize_toplists,
    resolve_cover,
)
from tunefree.services.providers import create_fallbacks
from tunefree.services.providers.base import FallbackProvider
from tunefree.services.proxy import ProxyChain
from tunefree.services.storage_service import SettingsStore
from tunefree.services.tunehub import TuneHubClient

logger = logging.getLogger(__name__)

SEARCH_PAGE_SIZE = "30"
DEFAULT_QUALITY = AudioQuality.HIGH.value
PLAYLIST_NAME_PATHS = (
    ('name',),
    ('info', 'name'),
    ('playlist', 'name'),
    ('data', 'name'),
    ('result', 'name'),
)
UNKNOWN_PLAYLIST = "未知歌单"


class InvalidSongError(ValueError):
    """Raised for caller mistakes such as an unknown provider tag."""
    pass


def _first_record(records: Optional[List[Any]]) -> Optional[Dict]:
    if not records:
        return None
    record = records[0]
    if not isinstance(record, dict):
        return None
    return record['data'] if isinstance(record.get('data'), dict) else record


def _lyric_text(record: Optional[Dict]) -> str:
    if not record:
        return ""
    lrc = record.get('lrc') or record.get('lyric')
    return lrc if isinstance(lrc, str) else ""


def _playlist_name(data: Any) -> str:
    if isinstance(data, dict):
        for path in PLAYLIST_NAME_PATHS:
            value = data
            for key in path:
                value = value.get(key) if isinstance(value, dict) else None
            if value:
                return str(value)
    return UNKNOWN_PLAYLIST


def is_resolvable_id(song_id: Any) -> bool:
    return song_id not in (None, '') and not str(song_id).startswith(TEMP_ID_PREFIX)


class MusicService:
    """
    Orchestration over the descriptor path and the hand-written fallbacks.

    Every listing operation runs the provider's method descriptor first,
    normalizes the payload, and only calls the fallback when the normalized
    result is empty. No operation raises for network or provider trouble;
    empty lists and None are the failure values.
    """

    def __init__(
        self,
        settings: Optional[SettingsStore] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache: Optional[ResolutionCache] = None,
        proxies: Optional[List[str]] = None,
        fallbacks: Optional[Dict[str, FallbackProvider]] = None,
        platforms: Optional[List[str]] = None,
    ):
        self.settings = settings or SettingsStore()
        self.tunehub = TuneHubClient(self.settings, client)
        self.chain = ProxyChain(proxies=proxies, client=client, settings=self.settings)
        self.executor = MethodExecutor(self.tunehub, self.chain)
        self.cache = cache if cache is not None else ResolutionCache()
        self.fallbacks = fallbacks if fallbacks is not None else create_fallbacks(self.chain)
        self.platforms = platforms if platforms is not None else enabled_platforms()

    @staticmethod
    def _require_platform(platform: str) -> str:
        try:
            return Platform(platform).value
        except ValueError:
            raise InvalidSongError(f"Unknown provider: {platform!r}")

    async def _or_fallback(self, platform: str, result: list, call: Callable[[FallbackProvider], Awaitable[list]]) -> list:
        if result:
            return result
        fallback = self.fallbacks.get(platform)
        if fallback is None:
            return result
        logger.info(f"Primary path for {platform} returned nothing, trying fallback")
        return await call(fallback)

    async def _backfill_covers(self, songs: List[Song], platform: str) -> List[Song]:
        if platform != Platform.KUWO.value or not missing_cover(songs):
            return songs
        fallback = self.fallbacks.get(platform)
        if fallback is None:
            return songs
        return await fallback.backfill_cover(songs)

    async def search(self, keyword: str, platform: str, page: int = 1) -> List[Song]:
        data = await self.executor.execute(platform, 'search', {
            'keyword': keyword,
            'page': str(page - 1),
            'pageSize': SEARCH_PAGE_SIZE,
        })
        songs = normalize_songs(extract_list(data), platform)
        songs = await self._or_fallback(platform, songs, lambda fb: fb.search(keyword, page))
        return await self._backfill_covers(songs, platform)

    async def search_aggregate(self, keyword: str, page: int = 1) -> List[Song]:
        """Concurrent search on every enabled platform, interleaved by position."""
        results = await asyncio.gather(
            *(self.search(keyword, platform, page) for platform in self.platforms),
            return_exceptions=True,
        )
        lists = []
        for platform, result in zip(self.platforms, results):
            if isinstance(result, Exception):
                logger.error(f"Aggregate search failed on {platform}: {type(result).__name__}: {result}")
                lists.append([])
            else:
                lists.append(result)
        return merge_round_robin(lists)

    async def toplists(self, platform: str) -> List[TopList]:
        data = await self.executor.execute(platform, 'toplists')
        toplists = normalize_toplists(extract_list(data), platform)
        return await self._or_fallback(platform, toplists, lambda fb: fb.toplists())

    async def toplist_detail(self, toplist_id: Any, platform: str) -> List[Song]:
        data = await self.executor.execute(platform, 'toplist', {'id': str(toplist_id)})
        songs = normalize_songs(extract_list(data), platform)
        songs = await self._or_fallback(platform, songs, lambda fb: fb.toplist_detail(str(toplist_id)))
        return await self._backfill_covers(songs, platform)

    async def playlist_detail(self, playlist_id: Any, platform: str) -> Optional[PlaylistDetail]:
        data = await self.executor.execute(platform, 'playlist', {'id': str(playlist_id)})
        if not data:
            return None
        songs = normalize_songs(extract_list(data), platform)
        songs = await self._backfill_covers(songs, platform)
        return PlaylistDetail(name=_playlist_name(data), songs=songs)

    async def parse(self, ids: Any, platform: str, quality: str = DEFAULT_QUALITY) -> Optional[List[Any]]:
        """
        Raw parse records for ``ids``, cached per (platform, ids, quality).
        Placeholder and empty ids are refused without touching the network.
        """
        if not is_resolvable_id(ids) or not platform:
            return None

        cached = self.cache.get_parse(platform, ids, quality)
        if cached is not None:
            return cached

        data = await self.tunehub.parse(platform, str(ids), quality)
        if not data:
            return None
        records = extract_list(data)
        if records:
            self.cache.set_parse(platform, ids, quality, records)
        return records

    async def song_info(self, song_id: Any, platform: str) -> Optional[Song]:
        records = await self.parse(song_id, platform)
        songs = normalize_songs(records or [], platform)
        return songs[0] if songs else None

    async def song_url(self, song_id: Any, platform: str, quality: str = DEFAULT_QUALITY) -> Optional[str]:
        if not platform or platform == 'undefined':
            return None
        record = _first_record(await self.parse(song_id, platform, quality))
        if record is None:
            return None
        return fix_url(record.get('url')) or None

    async def lyrics(self, song_id: Any, platform: str) -> str:
        """
        Lyric text: parse path first, provider fallback second.
        Found lyrics are cached for the process lifetime.
        """
        platform = self._require_platform(platform)
        if not is_resolvable_id(song_id):
            return ""

        cached = self.cache.get_lyric(platform, song_id)
        if cached is not None:
            return cached

        lrc = _lyric_text(_first_record(await self.parse(song_id, platform)))
        if not lrc:
            fallback = self.fallbacks.get(platform)
            if fallback is not None:
                logger.info(f"No lyrics from parse for {platform}:{song_id}, trying fallback")
                lrc = await fallback.lyric(str(song_id)) or ""

        if lrc:
            self.cache.set_lyric(platform, song_id, lrc)
        return lrc

    async def resolve(self, song: Song, quality: str = DEFAULT_QUALITY) -> Optional[PlaybackResult]:
        """One parse call yielding url, lyrics and cover for ``song``."""
        if not song.is_resolvable:
            return None

        record = _first_record(await self.parse(song.id, song.source, quality))
        if record is None:
            return PlaybackResult(url=None, pic=song.pic, quality=quality)

        lrc = _lyric_text(record)
        if lrc:
            self.cache.set_lyric(song.source, song.id, lrc)
        return PlaybackResult(
            url=fix_url(record.get('url')) or None,
            lrc=lrc,
            pic=resolve_cover(record, song.source) or song.pic,
            quality=quality,
        )
