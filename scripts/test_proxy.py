import asyncio
import json
from urllib.parse import unquote

import httpx

from tunefree.core.http_client import HttpClientManager
from tunefree.core.payload import decode_response, decode_text, is_garbage
from tunefree.services.proxy import ProxyChain
from tunefree.services.storage_service import MemoryStore, SettingsStore

TARGET = "https://music.163.com/api/toplist"


# --- Helpers ---

def make_client(routes):
    """``routes`` maps relay host -> callable(request) -> httpx.Response."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        route = routes.get(request.url.host)
        if route is None:
            raise httpx.ConnectError("unreachable", request=request)
        return route(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


def relayed_target(request: httpx.Request) -> str:
    return unquote(request.url.query.decode())


# --- payload decoding ---

def test_decode_plain_json_and_jsonp():
    assert decode_text('{"a": 1}') == {'a': 1}
    assert decode_text('MusicJsonCallback({"code": 0});') == {'code': 0}
    assert decode_text('jsonp1({"x": [1]})') == {'x': [1]}
    assert decode_text('<html>blocked</html>') is None
    assert decode_text('') is None

def test_unwrap_relay_envelope():
    envelope = json.dumps({'contents': 'callback({"list": [1]})', 'status': {'url': TARGET}})
    assert decode_response(envelope) == {'list': [1]}
    not_envelope = json.dumps({'contents': 'x', 'status': {}})
    assert decode_response(not_envelope) == {'contents': 'x', 'status': {}}

def test_garbage_detection():
    assert is_garbage([-1])
    assert is_garbage(['-1', 'blocked'])
    assert is_garbage({'code': -447})
    assert not is_garbage([])
    assert not is_garbage([1, 2])
    assert not is_garbage({'code': 200})


# --- proxy chain ---

def test_build_url_encodes_target():
    url = ProxyChain.build_url("https://corsproxy.io/?", "https://a.test/x?y=1&z=2")
    assert url == "https://corsproxy.io/?https%3A%2F%2Fa.test%2Fx%3Fy%3D1%26z%3D2"

def test_allorigins_gets_cache_buster():
    url = ProxyChain.build_url("https://api.allorigins.win/raw?url=", "https://a.test/")
    assert "&_t=" in url

def test_garbage_sentinel_moves_to_next_proxy():
    client, calls = make_client({
        'relay-a.test': lambda r: httpx.Response(200, json=[-1]),
        'relay-b.test': lambda r: httpx.Response(200, json={'list': [{'id': 1}]}),
    })
    chain = ProxyChain(proxies=["https://relay-a.test/?", "https://relay-b.test/?"], client=client)

    data = asyncio.run(chain.fetch_json(TARGET))

    assert data == {'list': [{'id': 1}]}
    assert [r.url.host for r in calls] == ['relay-a.test', 'relay-b.test']
    assert relayed_target(calls[1]) == TARGET

def test_all_proxies_garbage_or_failing_gives_none():
    client, calls = make_client({
        'relay-a.test': lambda r: httpx.Response(200, json=[-1]),
        'relay-b.test': lambda r: httpx.Response(200, text='not json at all'),
        'relay-c.test': lambda r: httpx.Response(502, text='bad gateway'),
    })
    chain = ProxyChain(
        proxies=["https://relay-a.test/?", "https://relay-b.test/?", "https://relay-c.test/?", "https://down.test/?"],
        client=client,
    )

    assert asyncio.run(chain.fetch_json(TARGET)) is None
    assert len(calls) == 4

def test_first_success_stops_iteration():
    client, calls = make_client({
        'relay-a.test': lambda r: httpx.Response(200, text='cb({"ok": true})'),
        'relay-b.test': lambda r: httpx.Response(200, json={'never': True}),
    })
    chain = ProxyChain(proxies=["https://relay-a.test/?", "https://relay-b.test/?"], client=client)

    assert asyncio.run(chain.fetch_json(TARGET)) == {'ok': True}
    assert len(calls) == 1

def test_post_forwards_method_headers_and_body():
    seen = {}

    def relay(request):
        seen['method'] = request.method
        seen['header'] = request.headers.get('x-token')
        seen['body'] = json.loads(request.content)
        return httpx.Response(200, json={'code': 0})

    client, _ = make_client({'relay-a.test': relay})
    chain = ProxyChain(proxies=["https://relay-a.test/?"], client=client)

    asyncio.run(chain.fetch_json(TARGET, method='POST', headers={'X-Token': 't'}, json_body={'q': 1}))

    assert seen == {'method': 'POST', 'header': 't', 'body': {'q': 1}}

def test_stored_proxy_replaces_defaults():
    settings = SettingsStore(MemoryStore())
    chain = ProxyChain(settings=settings)
    assert len(chain.proxies) == 3

    settings.cors_proxy = "https://my-relay.test/?"
    assert chain.proxies == ["https://my-relay.test/?"]

def test_fetch_text_returns_plain_body():
    client, _ = make_client({
        'relay-a.test': lambda r: httpx.Response(200, text='   '),
        'relay-b.test': lambda r: httpx.Response(200, text='http://img1.kwcdn.kuwo.cn/a.jpg\n'),
    })
    chain = ProxyChain(proxies=["https://relay-a.test/?", "https://relay-b.test/?"], client=client)

    assert asyncio.run(chain.fetch_text(TARGET)) == 'http://img1.kwcdn.kuwo.cn/a.jpg'

def test_shared_client_is_reused_until_closed():
    first = HttpClientManager.get_client()
    assert HttpClientManager.get_client() is first
    assert ProxyChain(proxies=["https://relay-a.test/?"]).client is first

    asyncio.run(HttpClientManager.close())
    assert first.is_closed
    second = HttpClientManager.get_client()
    assert second is not first
    asyncio.run(HttpClientManager.close())
