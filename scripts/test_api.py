import pytest
from fastapi.testclient import TestClient

from tunefree.api.endpoints.music import get_music_service
from tunefree.main import app
from tunefree.schemas.models import PlaylistDetail, Song, TopList


class StubService:
    def __init__(self):
        self.calls = []

    async def search(self, keyword, platform, page=1):
        self.calls.append(('search', keyword, platform, page))
        return [Song(id=1, source=platform, name=keyword)]

    async def search_aggregate(self, keyword, page=1):
        return [Song(id=1, source='netease'), Song(id='m', source='qq')]

    async def toplists(self, platform):
        return [TopList(id=3, name='Hot', picUrl='https://p.test/a.jpg', coverImgUrl='https://p.test/a.jpg')]

    async def toplist_detail(self, toplist_id, platform):
        self.calls.append(('toplist_detail', toplist_id, platform))
        return []

    async def playlist_detail(self, playlist_id, platform):
        if playlist_id == 'missing':
            return None
        return PlaylistDetail(name='Road trip', songs=[Song(id=1, source=platform)])

    async def song_url(self, song_id, platform, quality='320k'):
        return 'https://m701.music.126.net/a.mp3' if song_id == '1' else None

    async def lyrics(self, song_id, platform):
        return '[00:01.00]hello\n[00:01.00]你好' if song_id == '1' else ''


@pytest.fixture
def client():
    stub = StubService()
    app.dependency_overrides[get_music_service] = lambda: stub
    yield TestClient(app), stub
    app.dependency_overrides.clear()


def test_health(client):
    http, _ = client
    assert http.get('/v1/health').json() == {'status': 'ok'}

def test_search(client):
    http, stub = client
    response = http.get('/v1/search', params={'keyword': '晴天', 'platform': 'qq', 'page': 2})
    assert response.status_code == 200
    assert response.json()[0]['name'] == '晴天'
    assert response.json()[0]['isValidId'] is True
    assert stub.calls == [('search', '晴天', 'qq', 2)]

def test_search_rejects_unknown_platform_and_empty_keyword(client):
    http, _ = client
    assert http.get('/v1/search', params={'keyword': 'x', 'platform': 'spotify'}).status_code == 422
    assert http.get('/v1/search', params={'keyword': ''}).status_code == 422

def test_aggregate_search(client):
    http, _ = client
    sources = [s['source'] for s in http.get('/v1/search/aggregate', params={'keyword': 'x'}).json()]
    assert sources == ['netease', 'qq']

def test_toplists_use_camel_case_fields(client):
    http, stub = client
    toplist = http.get('/v1/toplists/kuwo').json()[0]
    assert toplist['picUrl'] == toplist['coverImgUrl'] == 'https://p.test/a.jpg'

    assert http.get('/v1/toplists/kuwo/93').json() == []
    assert stub.calls[-1] == ('toplist_detail', '93', 'kuwo')

def test_playlist(client):
    http, _ = client
    assert http.get('/v1/playlists/netease/9').json()['name'] == 'Road trip'
    assert http.get('/v1/playlists/netease/missing').status_code == 404

def test_song_url(client):
    http, _ = client
    response = http.get('/v1/songs/netease/1/url', params={'quality': 'flac'})
    assert response.json() == {'url': 'https://m701.music.126.net/a.mp3', 'quality': 'flac'}
    assert http.get('/v1/songs/netease/2/url').status_code == 404
    assert http.get('/v1/songs/netease/1/url', params={'quality': '999k'}).status_code == 422

def test_lyrics_are_returned_raw_and_parsed(client):
    http, _ = client
    body = http.get('/v1/songs/qq/1/lyrics').json()
    assert body['lrc'].startswith('[00:01.00]hello')
    assert body['lines'] == [{'time': 1.0, 'text': 'hello', 'translation': '你好'}]
    assert http.get('/v1/songs/qq/2/lyrics').status_code == 404
