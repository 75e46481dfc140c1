import asyncio
import logging
from typing import List, Optional
from urllib.parse import urlencode

from tunefree.core.urls import fix_url
from tunefree.schemas.models import Song, TopList
from tunefree.services.lyrics import format_tag
from tunefree.services.providers.base import SEARCH_PAGE_SIZE, TOPLIST_DETAIL_SIZE, FallbackProvider

logger = logging.getLogger(__name__)

SEARCH_URL = "http://search.kuwo.cn/r.s"
TOPLIST_URL = "http://wapi.kuwo.cn/api/pc/bang/list"
TOPLIST_DETAIL_URL = "http://kbangserver.kuwo.cn/ksong.s"
LYRIC_URL = "http://m.kuwo.cn/newh5/singles/songinfoandlrc"
COVER_URL = "http://artistpicserver.kuwo.cn/pic.web"

NO_PIC = "NO_PIC"


def strip_rid(rid) -> str:
    """``MUSIC_12345`` -> ``12345``"""
    rid = str(rid or "")
    return rid.split("_", 1)[1] if rid.upper().startswith("MUSIC_") else rid


class KuwoFallback(FallbackProvider):
    """
    Kuwo public endpoints.

    Kuwo listings rarely carry artwork, so ``backfill_cover`` asks the
    picture server for every song without a cover, all at once.
    """

    @property
    def platform(self) -> str:
        return "kuwo"

    def _song(self, song_id, name, artist, album, pic="") -> Song:
        return Song(
            id=strip_rid(song_id),
            name=name or "Unknown Song",
            artist=(artist or "Unknown Artist").replace("&", " / "),
            album=album or "",
            pic=fix_url(pic),
            source=self.platform,
        )

    async def search(self, keyword: str, page: int = 1) -> List[Song]:
        query = urlencode({
            "client": "kt",
            "all": keyword,
            "ft": "music",
            "pn": max(page, 1) - 1,
            "rn": SEARCH_PAGE_SIZE,
            "rformat": "json",
            "encoding": "utf8",
            "vermerge": 1,
            "mobi": 1,
        })
        try:
            data = await self.chain.fetch_json(f"{SEARCH_URL}?{query}")
            if not data:
                return []
            songs = []
            for item in data.get("abslist") or []:
                if not isinstance(item, dict) or not item.get("MUSICRID"):
                    continue
                songs.append(self._song(
                    item["MUSICRID"], item.get("SONGNAME") or item.get("NAME"),
                    item.get("ARTIST"), item.get("ALBUM"),
                ))
            return songs
        except Exception as e:
            logger.error(f"Kuwo fallback search error: {e}")
            return []

    async def toplists(self) -> List[TopList]:
        try:
            data = await self.chain.fetch_json(TOPLIST_URL)
            if not data:
                return []
            result = []
            # Charts arrive grouped by category
            for group in data.get("data") or []:
                if not isinstance(group, dict):
                    continue
                for item in group.get("list") or []:
                    if not isinstance(item, dict):
                        continue
                    pic = fix_url(item.get("pic", ""))
                    result.append(TopList(
                        id=item.get("sourceid") or item.get("id"),
                        name=item.get("name"),
                        updateFrequency=item.get("pub"),
                        picUrl=pic,
                        coverImgUrl=pic,
                    ))
            return result
        except Exception as e:
            logger.error(f"Kuwo fallback toplists error: {e}")
            return []

    async def toplist_detail(self, toplist_id: str) -> List[Song]:
        query = urlencode({
            "from": "pc",
            "fmt": "json",
            "pn": 0,
            "rn": TOPLIST_DETAIL_SIZE,
            "type": "bang",
            "data": "content",
            "id": toplist_id,
        })
        try:
            data = await self.chain.fetch_json(f"{TOPLIST_DETAIL_URL}?{query}")
            if not data:
                return []
            songs = [
                self._song(item.get("id"), item.get("name"), item.get("artist"), item.get("album"))
                for item in data.get("musiclist") or []
                if isinstance(item, dict) and item.get("id")
            ]
            return songs
        except Exception as e:
            logger.error(f"Kuwo fallback toplist detail error: {e}")
            return []

    async def lyric(self, song_id: str) -> Optional[str]:
        query = urlencode({"musicId": strip_rid(song_id), "httpsStatus": 1})
        try:
            data = await self.chain.fetch_json(f"{LYRIC_URL}?{query}")
            if not data:
                return None
            lines = (data.get("data") or {}).get("lrclist") or []
            lrc = []
            for line in lines:
                if not isinstance(line, dict):
                    continue
                try:
                    seconds = float(line.get("time", 0))
                except (TypeError, ValueError):
                    continue
                lrc.append(f"{format_tag(seconds)}{line.get('lineLyric', '')}")
            return "\n".join(lrc) or None
        except Exception as e:
            logger.error(f"Kuwo fallback lyric error: {e}")
            return None

    async def fetch_cover(self, song_id: str) -> str:
        query = urlencode({
            "type": "rid_pic",
            "pictype": "url",
            "content": "list",
            "size": 500,
            "rid": strip_rid(song_id),
        })
        text = await self.chain.fetch_text(f"{COVER_URL}?{query}")
        if not text or text == NO_PIC or not text.startswith(("http", "//")):
            return ""
        return fix_url(text)

    async def backfill_cover(self, songs: List[Song]) -> List[Song]:
        missing = [song for song in songs if not song.pic and song.is_resolvable]
        if not missing:
            return songs

        results = await asyncio.gather(
            *(self.fetch_cover(str(song.id)) for song in missing),
            return_exceptions=True,
        )
        filled = 0
        for song, cover in zip(missing, results):
            if isinstance(cover, Exception):
                logger.warning(f"Kuwo cover backfill failed for {song.id}: {cover}")
                continue
            if cover:
                song.pic = cover
                filled += 1
        logger.info(f"Kuwo cover backfill: {filled}/{len(missing)} covers found")
        return songs
