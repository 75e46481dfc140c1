import logging
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Image and API hosts verified to serve the same content over TLS
HTTPS_CAPABLE_HOSTS = (
    'music.126.net',
    'y.gtimg.cn',
    'qpic.cn',
    'kuwo.cn',
)

# Audio CDNs that do not send Access-Control-Allow-Origin
CORS_UNFRIENDLY_HOSTS = (
    'kuwo.cn',
    'sycdn.kuwo.cn',
    'qqmusic.qq.com',
    'stream.qqmusic.qq.com',
    'music.tc.qq.com',
)

QQ_COVER_TEMPLATE = 'https://y.gtimg.cn/music/photo_new/T002R300x300M000{mid}.jpg'


def fix_url(url) -> str:
    """
    Repair a provider URL.

    - kwcdn.kuwo.cn carries a broken certificate, kuwo.cn serves the same path
    - protocol-relative URLs become https
    - http is upgraded only for hosts listed in HTTPS_CAPABLE_HOSTS
    - QQ 300x300 covers are swapped for the 500x500 variant
    """
    if not url or not isinstance(url, str):
        return ''

    fixed = url.replace('kwcdn.kuwo.cn', 'kuwo.cn')
    fixed = fixed.strip()

    if fixed.startswith('//'):
        fixed = f'https:{fixed}'

    if fixed.startswith('http://') and any(host in fixed for host in HTTPS_CAPABLE_HOSTS):
        fixed = fixed.replace('http://', 'https://', 1)

    if '300x300' in fixed:
        fixed = fixed.replace('300x300', '500x500')

    return fixed


def qq_album_cover(album_mid: str) -> str:
    """Cover URL on the QQ image CDN for an album mid."""
    return QQ_COVER_TEMPLATE.format(mid=album_mid)


def host_of(url: str) -> str:
    try:
        return (urlparse(url).hostname or '').lower()
    except ValueError:
        return ''


def supports_cors(url: str) -> bool:
    """
    Whether the audio host allows a cross-origin binding.
    URLs without a parsable host count as unfriendly.
    """
    host = host_of(url)
    if not host:
        return False
    for unfriendly in CORS_UNFRIENDLY_HOSTS:
        if host == unfriendly or host.endswith('.' + unfriendly):
            return False
    return True
