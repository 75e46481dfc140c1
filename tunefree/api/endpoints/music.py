import logging
from functools import lru_cache
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from tunefree.core.config import SETTINGS_PATH
from tunefree.schemas.models import AudioQuality, LyricsResult, Platform, PlaylistDetail, Song, TopList
from tunefree.services.lyrics import parse_lrc
from tunefree.services.music_service import MusicService
from tunefree.services.storage_service import JsonFileStore, SettingsStore

router = APIRouter()
logger = logging.getLogger(__name__)


# One service per process so the caches are shared across requests
@lru_cache(maxsize=1)
def get_music_service() -> MusicService:
    return MusicService(settings=SettingsStore(JsonFileStore(SETTINGS_PATH)))


@router.get("/search", response_model=List[Song], summary="Search one platform")
async def search(
    keyword: str = Query(..., min_length=1),
    platform: Platform = Platform.NETEASE,
    page: int = Query(1, ge=1),
    service: MusicService = Depends(get_music_service),
):
    logger.info(f"Search request: {keyword!r} on {platform.value} page {page}")
    return await service.search(keyword, platform.value, page)


@router.get("/search/aggregate", response_model=List[Song], summary="Search all enabled platforms")
async def search_aggregate(
    keyword: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    service: MusicService = Depends(get_music_service),
):
    """Results of every platform interleaved by position."""
    logger.info(f"Aggregate search request: {keyword!r} page {page}")
    return await service.search_aggregate(keyword, page)


@router.get("/toplists/{platform}", response_model=List[TopList], summary="Charts of a platform")
async def toplists(platform: Platform, service: MusicService = Depends(get_music_service)):
    return await service.toplists(platform.value)


@router.get("/toplists/{platform}/{toplist_id}", response_model=List[Song], summary="Songs of a chart")
async def toplist_detail(platform: Platform, toplist_id: str, service: MusicService = Depends(get_music_service)):
    return await service.toplist_detail(toplist_id, platform.value)


@router.get("/playlists/{platform}/{playlist_id}", response_model=PlaylistDetail, summary="Playlist name and songs")
async def playlist_detail(platform: Platform, playlist_id: str, service: MusicService = Depends(get_music_service)):
    result = await service.playlist_detail(playlist_id, platform.value)
    if result is None:
        raise HTTPException(status_code=404, detail="Playlist not found")
    return result


@router.get("/songs/{platform}/{song_id}/url", summary="Playable URL at a quality tier")
async def song_url(
    platform: Platform,
    song_id: str,
    quality: AudioQuality = AudioQuality.HIGH,
    service: MusicService = Depends(get_music_service),
):
    url = await service.song_url(song_id, platform.value, quality.value)
    if not url:
        raise HTTPException(status_code=404, detail="No playable url found")
    return {"url": url, "quality": quality.value}


@router.get("/songs/{platform}/{song_id}/lyrics", response_model=LyricsResult, summary="Raw and parsed lyrics")
async def song_lyrics(platform: Platform, song_id: str, service: MusicService = Depends(get_music_service)):
    lrc = await service.lyrics(song_id, platform.value)
    if not lrc:
        raise HTTPException(status_code=404, detail="No lyrics found")
    return LyricsResult(lrc=lrc, lines=parse_lrc(lrc))
