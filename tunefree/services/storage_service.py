import json
import logging
import os
from typing import Any, Dict, List, Optional, Protocol

from tunefree.core.config import (
    DEFAULT_API_BASE,
    DEFAULT_API_KEY,
    DEFAULT_CORS_PROXY,
    DEFAULT_PROXIES,
)

logger = logging.getLogger(__name__)

API_KEY_KEY = "tunefree_api_key"
API_BASE_KEY = "tunefree_api_base"
CORS_PROXY_KEY = "tunefree_cors_proxy"


class KeyValueStore(Protocol):
    """Persistence port: string values under string keys."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store, used by default and in tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """
    Store backed by a single JSON document on disk.
    A missing or corrupt file is treated as an empty store.
    """
    DEFAULT_PATH = "data/settings.json"

    def __init__(self, path: str = DEFAULT_PATH):
        self.path = path
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load settings from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Discarding malformed settings file {self.path}")
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _flush(self) -> bool:
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, ensure_ascii=False, indent=2)
            return True
        except OSError as e:
            logger.error(f"Failed to save settings to {self.path}: {e}")
            return False

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()


def load_json(store: KeyValueStore, key: str, default: Any = None) -> Any:
    """
    Decode a JSON value from the store.
    Malformed entries are removed and reported as absent.
    """
    raw = store.get(key)
    if raw is None or raw == '':
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning(f"Discarding malformed stored value for {key}")
        store.remove(key)
        return default


def save_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set(key, json.dumps(value, ensure_ascii=False))


class SettingsStore:
    """
    User-editable connection settings over a KeyValueStore.
    Stored values win over environment defaults.
    """

    def __init__(self, store: Optional[KeyValueStore] = None):
        self.store = store if store is not None else MemoryStore()

    @property
    def api_key(self) -> str:
        return self.store.get(API_KEY_KEY) or DEFAULT_API_KEY

    @api_key.setter
    def api_key(self, value: str) -> None:
        self._set_or_remove(API_KEY_KEY, value)

    @property
    def api_base(self) -> str:
        base = self.store.get(API_BASE_KEY) or DEFAULT_API_BASE
        return base.rstrip('/')

    @api_base.setter
    def api_base(self, value: str) -> None:
        self._set_or_remove(API_BASE_KEY, (value or '').strip().rstrip('/'))

    @property
    def cors_proxy(self) -> Optional[str]:
        return self.store.get(CORS_PROXY_KEY) or DEFAULT_CORS_PROXY

    @cors_proxy.setter
    def cors_proxy(self, value: Optional[str]) -> None:
        self._set_or_remove(CORS_PROXY_KEY, value)

    @property
    def proxies(self) -> List[str]:
        """A configured single proxy replaces the default list outright."""
        proxy = self.cors_proxy
        return [proxy] if proxy else list(DEFAULT_PROXIES)

    def _set_or_remove(self, key: str, value: Optional[str]) -> None:
        if value:
            self.store.set(key, value)
        else:
            self.store.remove(key)
