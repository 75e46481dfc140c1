import json

from tunefree.core.netease_crypto import encrypt_weapi
from tunefree.services.cache import ResolutionCache
from tunefree.services.storage_service import (
    API_BASE_KEY,
    JsonFileStore,
    MemoryStore,
    SettingsStore,
    load_json,
    save_json,
)


# --- settings ---

def test_stored_settings_override_defaults():
    store = MemoryStore()
    settings = SettingsStore(store)

    settings.api_base = ' https://my.hub.test/api/ '
    settings.api_key = 'k'

    assert store.get(API_BASE_KEY) == 'https://my.hub.test/api'
    assert settings.api_base == 'https://my.hub.test/api'
    assert settings.api_key == 'k'

def test_clearing_a_setting_removes_it():
    store = MemoryStore({'tunefree_cors_proxy': 'https://relay.test/?'})
    settings = SettingsStore(store)
    assert settings.proxies == ['https://relay.test/?']

    settings.cors_proxy = None
    assert store.get('tunefree_cors_proxy') is None

def test_api_base_strips_trailing_slash_from_store():
    settings = SettingsStore(MemoryStore({API_BASE_KEY: 'https://hub.test/api//'}))
    assert settings.api_base == 'https://hub.test/api'


# --- json values ---

def test_load_json_removes_malformed_values():
    store = MemoryStore({'queue': '{broken'})
    assert load_json(store, 'queue', []) == []
    assert store.get('queue') is None

def test_save_then_load_json():
    store = MemoryStore()
    save_json(store, 'quality', 'flac')
    assert store.get('quality') == '"flac"'
    assert load_json(store, 'quality') == 'flac'
    assert load_json(store, 'missing', 'default') == 'default'


# --- file store ---

def test_file_store_persists_across_instances(tmp_path):
    path = str(tmp_path / 'nested' / 'settings.json')
    JsonFileStore(path).set('tunefree_api_key', '周')

    assert JsonFileStore(path).get('tunefree_api_key') == '周'
    with open(path, encoding='utf-8') as f:
        assert json.load(f) == {'tunefree_api_key': '周'}

def test_file_store_remove(tmp_path):
    path = str(tmp_path / 'settings.json')
    store = JsonFileStore(path)
    store.set('a', '1')
    store.remove('a')
    assert JsonFileStore(path).get('a') is None

def test_corrupt_or_foreign_file_is_an_empty_store(tmp_path):
    corrupt = tmp_path / 'corrupt.json'
    corrupt.write_text('{nope', encoding='utf-8')
    assert JsonFileStore(str(corrupt)).get('a') is None

    listing = tmp_path / 'list.json'
    listing.write_text('[1, 2]', encoding='utf-8')
    assert JsonFileStore(str(listing)).get('a') is None

    mixed = tmp_path / 'mixed.json'
    mixed.write_text('{"a": "x", "b": 3}', encoding='utf-8')
    store = JsonFileStore(str(mixed))
    assert store.get('a') == 'x'
    assert store.get('b') is None


# --- caches ---

class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_parse_cache_expires():
    clock = FakeClock()
    cache = ResolutionCache(parse_ttl=300, timer=clock)

    cache.set_parse('netease', 1, '320k', [{'url': 'u'}])
    assert cache.get_parse('netease', '1', '320k') == [{'url': 'u'}]
    assert cache.get_parse('netease', 1, 'flac') is None

    clock.now = 301
    assert cache.get_parse('netease', 1, '320k') is None

def test_lyric_cache_and_clear():
    cache = ResolutionCache(maxsize=2)
    cache.set_lyric('qq', 'a', 'x')
    cache.set_lyric('qq', 'b', 'y')
    cache.set_lyric('qq', 'c', 'z')

    assert cache.get_lyric('qq', 'a') is None
    assert cache.get_lyric('qq', 'c') == 'z'

    cache.clear()
    assert len(cache) == 0


# --- netease weapi ---

def test_encrypt_weapi_shape():
    form = encrypt_weapi({'id': '1', 'lv': -1, 'tv': -1})
    assert set(form) == {'params', 'encSecKey'}
    assert len(form['encSecKey']) == 256

def test_encrypt_weapi_is_deterministic_for_fixed_secret():
    secret = b'a' * 16
    assert encrypt_weapi({'id': 1}, secret) == encrypt_weapi({'id': 1}, secret)
