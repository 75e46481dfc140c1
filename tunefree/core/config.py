"""
Process configuration read from environment variables.

User-editable settings (API key, API base, CORS proxy) are layered on top of
these defaults by ``tunefree.services.storage_service.SettingsStore``.
"""

import os


def _is_enabled(env_var: str, default: bool = True) -> bool:
    """Check if a feature is enabled via environment variable."""
    value = os.getenv(env_var, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _float_env(env_var: str, default: float) -> float:
    try:
        return float(os.getenv(env_var, default))
    except ValueError:
        return default


def _int_env(env_var: str, default: int) -> int:
    try:
        return int(os.getenv(env_var, default))
    except ValueError:
        return default


DEFAULT_API_BASE = os.getenv("TUNEFREE_API_BASE", "https://tunehub.sayqz.com/api")
DEFAULT_API_KEY = os.getenv("TUNEFREE_API_KEY", "")
DEFAULT_CORS_PROXY = os.getenv("TUNEFREE_CORS_PROXY") or None

# corsproxy.io first: it forwards Referer, which QQ Music requires
DEFAULT_PROXIES = [
    "https://corsproxy.io/?",
    "https://api.codetabs.com/v1/proxy?quest=",
    "https://api.allorigins.win/raw?url=",
]

HTTP_TIMEOUT = _float_env("TUNEFREE_HTTP_TIMEOUT", 20.0)
PROXY_TIMEOUT = _float_env("TUNEFREE_PROXY_TIMEOUT", 12.0)

PARSE_CACHE_TTL = _int_env("TUNEFREE_PARSE_TTL", 300)
CACHE_MAXSIZE = _int_env("TUNEFREE_CACHE_MAXSIZE", 512)

LOG_LEVEL = os.getenv("TUNEFREE_LOG_LEVEL", "INFO").upper()

SETTINGS_PATH = os.getenv("TUNEFREE_SETTINGS_PATH", "data/settings.json")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) TuneFree/1.0"
)


def enabled_platforms() -> list[str]:
    """Platforms switched on through ENABLE_NETEASE / ENABLE_QQ / ENABLE_KUWO."""
    platforms = []
    if _is_enabled("ENABLE_NETEASE"):
        platforms.append("netease")
    if _is_enabled("ENABLE_QQ"):
        platforms.append("qq")
    if _is_enabled("ENABLE_KUWO"):
        platforms.append("kuwo")
    return platforms
