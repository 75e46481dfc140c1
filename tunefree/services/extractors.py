"""
Field and list extraction over provider-shaped payloads.

Each provider gets a ``RecordDecoder`` that knows the priority order of its
identity fields; ``DecoderFactory`` maps a platform tag to its decoder and
falls back to the generic one for unknown tags.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

IMAGE_KEYS = (
    'picUrl', 'coverImgUrl', 'pic', 'pic_v12', 'frontPicUrl',
    'headPicUrl', 'img', 'cover', 'imgUrl', 'album_pic', 'albumpic',
)

LIST_KEYS = (
    'tracks', 'songs', 'list', 'songlist', 'toplist', 'topList',
    'data', 'result', 'results', 'hotSongs',
)

GROUP_CONTAINER_PATHS = (
    ('data', 'groupList'),
    ('data', 'group'),
    ('groupList',),
    ('group',),
)

GROUP_MEMBER_KEYS = ('toplist', 'topList', 'list')


def _pick(record: Dict, path: Sequence[str]) -> Any:
    value = record
    for part in path:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _present(value: Any) -> bool:
    """JS-style truthiness for raw field values (0 and '' count as missing)."""
    return value is not None and value is not False and value != '' and value != 0


class RecordDecoder:
    """Generic decoder: ``id`` then ``ID``."""

    platform = 'generic'
    id_paths: Tuple[Tuple[str, ...], ...] = ()
    generic_id_paths: Tuple[Tuple[str, ...], ...] = (('id',), ('ID',))

    def find_id(self, record: Any) -> Optional[str]:
        if not isinstance(record, dict):
            return None
        for path in self.id_paths + self.generic_id_paths:
            value = _pick(record, path)
            if _present(value) and not isinstance(value, (dict, list)):
                return str(value)
        return None


class QQDecoder(RecordDecoder):
    """
    QQ Music: mnemonic mids first. Numeric song ids are not accepted by the
    parse endpoint. ``topId`` identifies charts, which carry no mid.
    """

    platform = 'qq'
    id_paths = (
        ('songmid',),
        ('mid',),
        ('file', 'media_mid'),
        ('topId',),
    )


class KuwoDecoder(RecordDecoder):
    """Kuwo: the resource id ``rid`` (or ``musicrid``) over generic ``id``."""

    platform = 'kuwo'
    id_paths = (
        ('rid',),
        ('musicrid',),
    )


class NeteaseDecoder(RecordDecoder):
    platform = 'netease'


class DecoderFactory:
    """Factory mapping platform tags to record decoders."""

    _decoders: Dict[str, RecordDecoder] = {
        'qq': QQDecoder(),
        'kuwo': KuwoDecoder(),
        'netease': NeteaseDecoder(),
    }
    _generic = RecordDecoder()

    @classmethod
    def get(cls, platform: str) -> RecordDecoder:
        return cls._decoders.get(platform, cls._generic)


def find_id(record: Any, platform: str) -> Optional[str]:
    """Provider-native identity of a raw record, or None when undiscoverable."""
    return DecoderFactory.get(platform).find_id(record)


def find_image(record: Any) -> str:
    """First string-valued cover field, then ``mac_detail.pic_v12``; '' otherwise."""
    if not isinstance(record, dict):
        return ''
    for key in IMAGE_KEYS:
        value = record.get(key)
        if value and isinstance(value, str):
            return value
    nested = _pick(record, ('mac_detail', 'pic_v12'))
    if nested and isinstance(nested, str):
        return nested
    return ''


def _looks_like_group(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    return any(_present(item.get(key)) for key in GROUP_MEMBER_KEYS + ('groupName',))


def flatten_groups(groups: List[Any]) -> List[Any]:
    """Concatenate every group's member list, keeping group then member order."""
    flattened = []
    for group in groups:
        if not isinstance(group, dict):
            continue
        for key in GROUP_MEMBER_KEYS:
            members = group.get(key)
            if members:
                if isinstance(members, list):
                    flattened.extend(members)
                break
    return flattened


def _list_or_groups(items: List[Any]) -> List[Any]:
    if items and _looks_like_group(items[0]):
        flattened = flatten_groups(items)
        if flattened:
            return flattened
    return items


def extract_list(payload: Any) -> List[Any]:
    """
    Find the array of track-like records inside an arbitrary payload.

    Order matters: grouped charts are flattened before the generic key scan,
    otherwise the group wrappers would come back as if they were songs.
    """
    if not payload:
        return []

    if isinstance(payload, dict):
        for path in GROUP_CONTAINER_PATHS:
            groups = _pick(payload, path)
            if groups and isinstance(groups, list):
                flattened = flatten_groups(groups)
                if flattened:
                    return flattened

    if isinstance(payload, list):
        return _list_or_groups(payload)

    if not isinstance(payload, dict):
        return []

    for key in LIST_KEYS:
        value = payload.get(key)
        if isinstance(value, list) and value:
            return _list_or_groups(value)

    inner = payload.get('data')
    if isinstance(inner, dict):
        for key in LIST_KEYS:
            value = inner.get(key)
            if isinstance(value, list) and value:
                return _list_or_groups(value)

    if _present(payload.get('id')) and _present(payload.get('name')):
        return [payload]

    return []
