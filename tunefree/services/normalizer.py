import logging
import secrets
from typing import Any, Dict, List, Optional, Sequence

from tunefree.core.urls import fix_url, qq_album_cover
from tunefree.schemas.models import Song, TopList
from tunefree.services.extractors import find_id, find_image

logger = logging.getLogger(__name__)

UNKNOWN_SONG = 'Unknown Song'
UNKNOWN_ARTIST = 'Unknown Artist'
TEMP_ID_PREFIX = 'temp_'

# Canonical fields are always rebuilt; these raw keys never pass through
_RESERVED_KEYS = {
    'id', 'name', 'artist', 'album', 'pic', 'source', 'isValidId', 'is_valid_id',
    'url', 'lrc', 'types',
}
_TOPLIST_KEYS = {
    'id', 'name', 'updateFrequency', 'update_frequency', 'picUrl', 'pic_url',
    'coverImgUrl', 'cover_img_url',
}


def make_temp_id() -> str:
    return f'{TEMP_ID_PREFIX}{secrets.token_hex(6)}'


def _text(value: Any) -> str:
    if value is None or value is False:
        return ''
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _join_names(entries: Any) -> str:
    names = [_text(entry.get('name')) for entry in entries if isinstance(entry, dict)]
    return '/'.join(name for name in names if name)


def resolve_artist(record: Dict) -> str:
    artist = record.get('artist')
    if artist and isinstance(artist, str):
        return artist
    for key in ('ar', 'artists', 'singer'):
        value = record.get(key)
        if isinstance(value, list):
            joined = _join_names(value)
            if joined:
                return joined
    if isinstance(artist, dict) and artist.get('name'):
        return _text(artist['name'])
    if record.get('artist_name'):
        return _text(record['artist_name'])
    if record.get('singername'):
        return _text(record['singername'])
    return ''


def resolve_album(record: Dict) -> str:
    album = record.get('album')
    if isinstance(album, dict):
        return _text(album.get('name') or album.get('title'))
    if album:
        return _text(album)
    for key in ('album_name', 'albumname', 'albumName'):
        if record.get(key):
            return _text(record[key])
    al = record.get('al')
    if isinstance(al, dict) and al.get('name'):
        return _text(al['name'])
    return ''


def resolve_cover(record: Dict, platform: str) -> str:
    pic = find_image(record)

    if not pic:
        for nested in ('al', 'album'):
            value = record.get(nested)
            if isinstance(value, dict) and isinstance(value.get('picUrl'), str) and value['picUrl']:
                pic = value['picUrl']
                break

    if not pic and platform == 'qq':
        album = record.get('album')
        mid = record.get('albummid') or (album.get('mid') if isinstance(album, dict) else None) or record.get('album_mid')
        if mid:
            pic = qq_album_cover(mid)

    return fix_url(pic)


def _sanitized_types(value: Any) -> Optional[List[str]]:
    if isinstance(value, list):
        types = [item for item in value if isinstance(item, str)]
        return types or None
    return None


def normalize_song(item: Any, platform: str) -> Optional[Song]:
    if not item or not isinstance(item, dict):
        return None

    record = item['data'] if isinstance(item.get('data'), dict) else item

    song_id = find_id(record, platform)
    extra = {key: value for key, value in record.items()
             if key not in _RESERVED_KEYS and not key.startswith('_')}

    name = record.get('name') or record.get('title') or record.get('songname')

    return Song(
        **extra,
        id=song_id if song_id is not None else make_temp_id(),
        name=_text(name) or UNKNOWN_SONG,
        artist=resolve_artist(record) or UNKNOWN_ARTIST,
        album=resolve_album(record),
        pic=resolve_cover(record, platform),
        url=fix_url(record.get('url')) or None,
        lrc=record.get('lrc') if isinstance(record.get('lrc'), str) else None,
        source=platform,
        types=_sanitized_types(record.get('types')),
        isValidId=song_id is not None,
    )


def normalize_songs(items: Any, platform: str) -> List[Song]:
    """Map raw records to Songs; falsy and non-dict records are dropped."""
    if not isinstance(items, list):
        return []
    songs = []
    for item in items:
        song = normalize_song(item, platform)
        if song is not None:
            songs.append(song)
    invalid = sum(1 for song in songs if not song.is_valid_id)
    if invalid:
        logger.warning(f"{invalid}/{len(songs)} {platform} records had no identity; assigned temp ids")
    return songs


def normalize_toplists(items: Any, platform: str) -> List[TopList]:
    if not isinstance(items, list):
        return []
    toplists = []
    for item in items:
        if not isinstance(item, dict):
            continue
        cover = fix_url(find_image(item))
        extra = {key: value for key, value in item.items()
                 if key not in _TOPLIST_KEYS and not key.startswith('_')}
        name = item.get('name') or item.get('topTitle') or item.get('group_name') \
            or item.get('title') or item.get('intro')
        frequency = item.get('updateFrequency') or item.get('update_key') or item.get('period')
        toplists.append(TopList(
            **extra,
            id=find_id(item, platform),
            name=_text(name) or None,
            updateFrequency=_text(frequency) or None,
            picUrl=cover,
            coverImgUrl=cover,
        ))
    return toplists


def merge_round_robin(lists: Sequence[List[Song]]) -> List[Song]:
    """Interleave by position: a1, b1, c1, a2, b2, ... skipping exhausted lists."""
    merged = []
    longest = max((len(items) for items in lists), default=0)
    for index in range(longest):
        for items in lists:
            if index < len(items):
                merged.append(items[index])
    return merged


def missing_cover(songs: List[Song]) -> List[Song]:
    return [song for song in songs if not song.pic]
