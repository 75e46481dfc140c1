import logging
from typing import Dict, List, Optional
from urllib.parse import urlencode

from tunefree.core.netease_crypto import encrypt_weapi
from tunefree.core.urls import fix_url
from tunefree.schemas.models import Song, TopList
from tunefree.services.lyrics import merge_translation
from tunefree.services.providers.base import SEARCH_PAGE_SIZE, FallbackProvider

logger = logging.getLogger(__name__)

SEARCH_URL = "https://music.163.com/api/cloudsearch/pc"
TOPLIST_URL = "https://music.163.com/api/toplist"
PLAYLIST_URL = "https://music.163.com/api/v6/playlist/detail"
LYRIC_URL = "https://music.163.com/weapi/song/lyric?csrf_token="


def _artists(entries) -> str:
    if not isinstance(entries, list):
        return ""
    return " / ".join(ar.get("name", "") for ar in entries if isinstance(ar, dict) and ar.get("name"))


class NeteaseFallback(FallbackProvider):
    @property
    def platform(self) -> str:
        return "netease"

    def _song(self, data: Dict) -> Song:
        album = data.get("al") or data.get("album") or {}
        return Song(
            id=str(data.get("id", "")),
            name=data.get("name") or "Unknown Song",
            artist=_artists(data.get("ar") or data.get("artists")) or "Unknown Artist",
            album=album.get("name", "") if isinstance(album, dict) else "",
            pic=fix_url(album.get("picUrl", "")) if isinstance(album, dict) else "",
            source=self.platform,
        )

    async def search(self, keyword: str, page: int = 1) -> List[Song]:
        query = urlencode({
            "s": keyword,
            "type": 1,
            "limit": SEARCH_PAGE_SIZE,
            "offset": (max(page, 1) - 1) * SEARCH_PAGE_SIZE,
            "total": "true",
        })
        try:
            data = await self.chain.fetch_json(f"{SEARCH_URL}?{query}")
            if not data or data.get("code") != 200:
                return []
            songs = (data.get("result") or {}).get("songs") or []
            return [self._song(s) for s in songs if isinstance(s, dict) and s.get("id")]
        except Exception as e:
            logger.error(f"Netease fallback search error: {e}")
            return []

    async def toplists(self) -> List[TopList]:
        try:
            data = await self.chain.fetch_json(TOPLIST_URL)
            if not data:
                return []
            result = []
            for item in data.get("list") or []:
                if not isinstance(item, dict):
                    continue
                pic = fix_url(item.get("coverImgUrl", ""))
                result.append(TopList(
                    id=item.get("id"),
                    name=item.get("name"),
                    updateFrequency=item.get("updateFrequency"),
                    picUrl=pic,
                    coverImgUrl=pic,
                ))
            return result
        except Exception as e:
            logger.error(f"Netease fallback toplists error: {e}")
            return []

    async def toplist_detail(self, toplist_id: str) -> List[Song]:
        # Charts are ordinary playlists on Netease
        try:
            data = await self.chain.fetch_json(f"{PLAYLIST_URL}?{urlencode({'id': toplist_id, 'n': 1000})}")
            if not data:
                return []
            tracks = (data.get("playlist") or {}).get("tracks") or []
            return [self._song(t) for t in tracks if isinstance(t, dict) and t.get("id")]
        except Exception as e:
            logger.error(f"Netease fallback toplist detail error: {e}")
            return []

    async def lyric(self, song_id: str) -> Optional[str]:
        form = encrypt_weapi({"id": song_id, "lv": -1, "tv": -1})
        try:
            data = await self.chain.fetch_json(LYRIC_URL, method="POST", form=form)
            if not data:
                return None
            lrc = (data.get("lrc") or {}).get("lyric")
            tlyric = (data.get("tlyric") or {}).get("lyric")
            return merge_translation(lrc, tlyric) or None
        except Exception as e:
            logger.error(f"Netease fallback lyric error: {e}")
            return None
