import asyncio
import json
import random

from tunefree.schemas.models import AudioQuality, PlaybackResult, Song
from tunefree.services.playback import (
    MODE_KEY,
    QUALITY_KEY,
    QUEUE_KEY,
    PlaybackController,
    PlaybackEngineError,
    PlaybackStatus,
    PlayMode,
)
from tunefree.services.storage_service import MemoryStore

NETEASE_URL = "https://m701.music.126.net/a.mp3"
KUWO_URL = "http://sycdn.kuwo.cn/b.mp3"


# --- Fakes ---

class FakeService:
    """``urls`` maps (song id, quality) -> url; missing pairs resolve without a url."""

    def __init__(self, urls=None, gates=None):
        self.urls = urls or {}
        self.gates = gates or {}
        self.calls = []

    async def resolve(self, song, quality='320k'):
        self.calls.append((str(song.id), quality))
        gate = self.gates.get(str(song.id))
        if gate is not None:
            await gate.wait()
        url = self.urls.get((str(song.id), quality))
        return PlaybackResult(url=url, lrc='[00:01.00]hello', pic='https://p1.music.126.net/c.jpg', quality=quality)


class FakeOutput:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.loads = []
        self.rebuilds = []
        self.events = []

    async def load(self, url, instrumented):
        self.loads.append((url, instrumented))
        if url in self.failing:
            raise PlaybackEngineError(f"cannot decode {url}")

    def pause(self):
        self.events.append('pause')

    def resume(self):
        self.events.append('resume')

    def seek(self, position):
        self.events.append(('seek', position))

    def rebuild(self, instrumented):
        self.rebuilds.append(instrumented)


def song(song_id, source='netease'):
    return Song(id=song_id, source=source, name=f"song {song_id}")


def make_controller(urls=None, failing=(), store=None, gates=None):
    service = FakeService(urls, gates)
    output = FakeOutput(failing)
    controller = PlaybackController(service, output, store=store, rng=random.Random(7))
    return controller, service, output


# --- degrade and retry ---

def test_missing_url_degrades_once_to_lowest_tier():
    controller, service, output = make_controller({('1', '128k'): NETEASE_URL})

    assert asyncio.run(controller.play(song(1), 'flac24bit'))

    assert service.calls == [('1', 'flac24bit'), ('1', '128k')]
    assert controller.state.retry_count == 1
    assert controller.state.status == PlaybackStatus.PLAYING
    assert controller.state.active_quality == AudioQuality.STANDARD
    assert output.loads == [(NETEASE_URL, True)]

def test_no_url_at_any_tier_fails_after_one_retry():
    controller, service, output = make_controller()

    assert not asyncio.run(controller.play(song(1), 'flac'))

    assert len(service.calls) == 2
    assert controller.state.status == PlaybackStatus.FAILED
    assert not controller.state.is_playing
    assert output.loads == []

def test_lowest_tier_has_nothing_to_degrade_to():
    controller, service, _ = make_controller()
    assert not asyncio.run(controller.play(song(1), '128k'))
    assert service.calls == [('1', '128k')]

def test_engine_error_degrades_once():
    flac_url = "https://m701.music.126.net/a.flac"
    controller, service, output = make_controller(
        {('1', 'flac'): flac_url, ('1', '128k'): NETEASE_URL}, failing={flac_url},
    )

    assert asyncio.run(controller.play(song(1), 'flac'))

    assert [url for url, _ in output.loads] == [flac_url, NETEASE_URL]
    assert service.calls == [('1', 'flac'), ('1', '128k')]
    assert controller.state.status == PlaybackStatus.PLAYING

def test_engine_error_at_lowest_tier_is_terminal():
    controller, _, output = make_controller({('1', '128k'): NETEASE_URL}, failing={NETEASE_URL})

    assert not asyncio.run(controller.play(song(1), '128k'))
    assert len(output.loads) == 1
    assert controller.state.status == PlaybackStatus.FAILED

def test_manual_selection_restores_the_retry_budget():
    controller, service, _ = make_controller()
    track = song(1)

    asyncio.run(controller.play(track, 'flac'))
    assert controller.state.retry_count == 1

    service.urls[('1', '128k')] = NETEASE_URL
    assert asyncio.run(controller.play(track, 'flac'))
    assert service.calls[-2:] == [('1', 'flac'), ('1', '128k')]

def test_placeholder_songs_are_never_resolved():
    controller, service, _ = make_controller()
    temp = Song(id='temp_1', source='qq', isValidId=False)

    assert not asyncio.run(controller.play(temp))
    assert service.calls == []
    assert controller.state.status == PlaybackStatus.FAILED


# --- race guard ---

def test_stale_resolution_is_discarded():
    urls = {('x', '320k'): "https://m701.music.126.net/x.mp3", ('y', '320k'): NETEASE_URL}

    async def scenario():
        controller, _, output = make_controller(urls, gates={'x': asyncio.Event()})
        first = asyncio.create_task(controller.play(song('x')))
        await asyncio.sleep(0)
        second = await controller.play(song('y'))
        controller.service.gates['x'].set()
        return controller, output, await first, second

    controller, output, first, second = asyncio.run(scenario())

    assert first is False
    assert second is True
    assert output.loads == [(NETEASE_URL, True)]
    assert controller.state.current.id == 'y'
    assert controller.state.url == NETEASE_URL


# --- routing ---

def test_switching_routing_posture_rebuilds_output_once():
    controller, _, output = make_controller({
        ('1', '320k'): NETEASE_URL,
        ('2', '320k'): KUWO_URL,
        ('3', '320k'): "http://other.sycdn.kuwo.cn/c.mp3",
    })

    asyncio.run(controller.play(song(1)))
    asyncio.run(controller.play(song(2, 'kuwo')))
    asyncio.run(controller.play(song(3, 'kuwo')))

    assert output.rebuilds == [False]
    assert [instrumented for _, instrumented in output.loads] == [True, False, False]


# --- resolved extras ---

def test_resolution_fills_cover_and_lyrics():
    controller, _, _ = make_controller({('1', '320k'): NETEASE_URL})
    track = song(1)

    asyncio.run(controller.play(track))

    assert track.pic == 'https://p1.music.126.net/c.jpg'
    assert [line.text for line in controller.state.lyrics] == ['hello']


# --- queue and controls ---

def test_queue_membership_is_by_source_and_id():
    controller, _, _ = make_controller()

    controller.add_to_queue(song(1))
    controller.add_to_queue(song('1'))
    controller.add_to_queue(song(1, 'qq'))
    assert [s.key for s in controller.state.queue] == [('netease', '1'), ('qq', '1')]

    controller.remove_from_queue(song(1))
    assert [s.key for s in controller.state.queue] == [('qq', '1')]

    controller.clear_queue()
    assert controller.state.queue == []

def test_sequence_next_and_prev_wrap_around():
    urls = {(str(i), '320k'): NETEASE_URL for i in (1, 2, 3)}
    controller, _, _ = make_controller(urls)
    for i in (1, 2, 3):
        controller.add_to_queue(song(i))

    asyncio.run(controller.play(song(3)))
    asyncio.run(controller.play_next())
    assert controller.state.current.id == 1

    asyncio.run(controller.play_prev())
    assert controller.state.current.id == 3

def test_shuffle_never_repeats_current_track():
    urls = {(str(i), '320k'): NETEASE_URL for i in (1, 2)}
    controller, _, _ = make_controller(urls)
    controller.add_to_queue(song(1))
    controller.add_to_queue(song(2))
    controller.state.mode = PlayMode.SHUFFLE

    asyncio.run(controller.play(song(1)))
    for _ in range(5):
        previous = controller.state.current.id
        asyncio.run(controller.play_next())
        assert controller.state.current.id != previous

def test_next_on_empty_queue_does_nothing():
    controller, service, _ = make_controller()
    assert not asyncio.run(controller.play_next())
    assert service.calls == []

def test_toggle_mode_cycles():
    controller, _, _ = make_controller()
    assert [controller.toggle_mode() for _ in range(3)] == [PlayMode.LOOP, PlayMode.SHUFFLE, PlayMode.SEQUENCE]

def test_loop_mode_restarts_current_track():
    controller, service, output = make_controller({('1', '320k'): NETEASE_URL})
    controller.state.mode = PlayMode.LOOP

    asyncio.run(controller.play(song(1)))
    asyncio.run(controller.on_track_end())

    assert output.events == [('seek', 0), 'resume']
    assert len(service.calls) == 1

def test_track_end_advances_in_sequence_mode():
    urls = {('1', '320k'): NETEASE_URL, ('2', '320k'): NETEASE_URL}
    controller, _, _ = make_controller(urls)
    controller.add_to_queue(song(1))
    controller.add_to_queue(song(2))

    asyncio.run(controller.play(song(1)))
    asyncio.run(controller.on_track_end())

    assert controller.state.current.id == 2

def test_toggle_play_only_while_playing():
    controller, _, output = make_controller({('1', '320k'): NETEASE_URL})
    controller.toggle_play()
    assert output.events == []

    asyncio.run(controller.play(song(1)))
    controller.toggle_play()
    controller.toggle_play()
    assert output.events == ['pause', 'resume']
    assert controller.state.is_playing

def test_quality_change_reloads_playing_track():
    controller, service, _ = make_controller({('1', '320k'): NETEASE_URL, ('1', 'flac'): NETEASE_URL})

    asyncio.run(controller.play(song(1)))
    assert asyncio.run(controller.set_quality('flac'))

    assert service.calls == [('1', '320k'), ('1', 'flac')]
    assert controller.state.quality == AudioQuality.LOSSLESS


# --- persistence ---

def test_state_is_restored_and_malformed_entries_dropped():
    store = MemoryStore({
        QUEUE_KEY: json.dumps([{'id': 1, 'source': 'qq', 'name': 'kept'}, {'bad': True}]),
        QUALITY_KEY: '"flac"',
        MODE_KEY: '"loop"',
    })
    controller, _, _ = make_controller(store=store)

    assert [s.name for s in controller.state.queue] == ['kept']
    assert controller.state.quality == AudioQuality.LOSSLESS
    assert controller.state.mode == PlayMode.LOOP

def test_unparsable_queue_is_removed():
    store = MemoryStore({QUEUE_KEY: '[{not json', QUALITY_KEY: '"nonsense"'})
    controller, _, _ = make_controller(store=store)

    assert controller.state.queue == []
    assert controller.state.quality == AudioQuality.HIGH
    assert store.get(QUEUE_KEY) is None

def test_queue_changes_are_persisted():
    store = MemoryStore()
    controller, _, _ = make_controller(store=store)

    controller.add_to_queue(Song(id='m1', source='qq', isValidId=True))
    controller.toggle_mode()

    saved = json.loads(store.get(QUEUE_KEY))
    assert [(s['source'], s['id']) for s in saved] == [('qq', 'm1')]
    assert saved[0]['isValidId'] is True
    assert json.loads(store.get(MODE_KEY)) == 'loop'
