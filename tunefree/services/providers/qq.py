import html
import logging
from typing import Dict, List, Optional
from urllib.parse import urlencode

from tunefree.core.urls import fix_url, qq_album_cover
from tunefree.schemas.models import Song, TopList
from tunefree.services.lyrics import merge_translation
from tunefree.services.providers.base import SEARCH_PAGE_SIZE, TOPLIST_DETAIL_SIZE, FallbackProvider

logger = logging.getLogger(__name__)

SEARCH_URL = "https://c.y.qq.com/soso/fcgi-bin/client_search_cp"
TOPLIST_URL = "https://c.y.qq.com/v8/fcg-bin/fcg_myqq_toplist.fcg"
TOPLIST_DETAIL_URL = "https://c.y.qq.com/v8/fcg-bin/fcg_v8_toplist_cp.fcg"
LYRIC_URL = "https://c.y.qq.com/lyric/fcgi-bin/fcg_query_lyric_new.fcg"


def _singers(entries) -> str:
    if not isinstance(entries, list):
        return ""
    return " / ".join(s.get("name", "") for s in entries if isinstance(s, dict) and s.get("name"))


def _cover(album_mid: str) -> str:
    return fix_url(qq_album_cover(album_mid)) if album_mid else ""


class QQFallback(FallbackProvider):
    """
    QQ Music public web endpoints.
    Songs are identified by ``songmid``; numeric ids are never used.
    """

    @property
    def platform(self) -> str:
        return "qq"

    def _search_song(self, data: Dict) -> Song:
        album = data.get("album") or {}
        return Song(
            id=data.get("mid", ""),
            name=data.get("name") or data.get("title") or "Unknown Song",
            artist=_singers(data.get("singer")) or "Unknown Artist",
            album=(album.get("name") or album.get("title") or "").strip(),
            pic=_cover(album.get("mid", "")),
            source=self.platform,
        )

    def _chart_song(self, data: Dict) -> Song:
        return Song(
            id=data.get("songmid", ""),
            name=data.get("songname") or "Unknown Song",
            artist=_singers(data.get("singer")) or "Unknown Artist",
            album=data.get("albumname", ""),
            pic=_cover(data.get("albummid", "")),
            source=self.platform,
        )

    async def search(self, keyword: str, page: int = 1) -> List[Song]:
        query = urlencode({
            "format": "json",
            "p": max(page, 1),
            "n": SEARCH_PAGE_SIZE,
            "w": keyword,
            "aggr": 1,
            "lossless": 1,
            "cr": 1,
            "new_json": 1,
        })
        try:
            data = await self.chain.fetch_json(f"{SEARCH_URL}?{query}")
            if not data:
                return []
            songs = ((data.get("data") or {}).get("song") or {}).get("list") or []
            return [self._search_song(s) for s in songs if isinstance(s, dict) and s.get("mid")]
        except Exception as e:
            logger.error(f"QQ fallback search error: {e}")
            return []

    async def toplists(self) -> List[TopList]:
        query = urlencode({"format": "json", "platform": "h5"})
        try:
            data = await self.chain.fetch_json(f"{TOPLIST_URL}?{query}")
            if not data:
                return []
            result = []
            for item in (data.get("data") or {}).get("topList") or []:
                if not isinstance(item, dict):
                    continue
                pic = fix_url(item.get("picUrl", ""))
                result.append(TopList(
                    id=item.get("id"),
                    name=item.get("topTitle"),
                    picUrl=pic,
                    coverImgUrl=pic,
                ))
            return result
        except Exception as e:
            logger.error(f"QQ fallback toplists error: {e}")
            return []

    async def toplist_detail(self, toplist_id: str) -> List[Song]:
        query = urlencode({
            "topid": toplist_id,
            "format": "json",
            "type": "top",
            "song_begin": 0,
            "song_num": TOPLIST_DETAIL_SIZE,
            "platform": "h5",
        })
        try:
            data = await self.chain.fetch_json(f"{TOPLIST_DETAIL_URL}?{query}")
            if not data:
                return []
            songs = []
            for entry in data.get("songlist") or []:
                song = entry.get("data") if isinstance(entry, dict) else None
                if isinstance(song, dict) and song.get("songmid"):
                    songs.append(self._chart_song(song))
            return songs
        except Exception as e:
            logger.error(f"QQ fallback toplist detail error: {e}")
            return []

    async def lyric(self, song_id: str) -> Optional[str]:
        query = urlencode({"songmid": song_id, "format": "json", "nobase64": 1, "g_tk": 5381})
        try:
            data = await self.chain.fetch_json(f"{LYRIC_URL}?{query}")
            if not data:
                return None
            lrc = html.unescape(data.get("lyric") or "")
            trans = html.unescape(data.get("trans") or "")
            return merge_translation(lrc, trans) or None
        except Exception as e:
            logger.error(f"QQ fallback lyric error: {e}")
            return None
