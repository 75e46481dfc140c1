import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, List, Optional, Protocol

from pydantic import ValidationError

from tunefree.core.urls import supports_cors
from tunefree.schemas.models import LOWEST_QUALITY, AudioQuality, ParsedLyric, Song
from tunefree.services.lyrics import parse_lrc
from tunefree.services.music_service import MusicService
from tunefree.services.storage_service import KeyValueStore, load_json, save_json

logger = logging.getLogger(__name__)

QUEUE_KEY = "tunefree_queue"
QUALITY_KEY = "tunefree_quality"
MODE_KEY = "tunefree_play_mode"

# Automatic degrades allowed per manual track selection
MAX_AUTO_RETRIES = 1


class PlayMode(str, Enum):
    SEQUENCE = "sequence"
    LOOP = "loop"
    SHUFFLE = "shuffle"

    def next(self) -> "PlayMode":
        order = list(PlayMode)
        return order[(order.index(self) + 1) % len(order)]


class PlaybackStatus(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    RESOLVING = "resolving"
    DEGRADING = "degrading"
    PLAYING = "playing"
    FAILED = "failed"


class Routing(str, Enum):
    INSTRUMENTED = "instrumented"
    PLAIN = "plain"


class PlaybackEngineError(Exception):
    """Raised by an AudioOutput when the engine rejects or cannot fetch a URL."""
    pass


class AudioOutput(Protocol):
    """The media engine the controller drives."""

    def load(self, url: str, instrumented: bool) -> Awaitable[None]: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def seek(self, position: float) -> None: ...

    def rebuild(self, instrumented: bool) -> None: ...


@dataclass
class PlayerState:
    """
    Single shared holder of the player's live values.
    Callbacks always read from here, never from a captured copy.
    """
    current: Optional[Song] = None
    queue: List[Song] = field(default_factory=list)
    mode: PlayMode = PlayMode.SEQUENCE
    quality: AudioQuality = AudioQuality.HIGH
    status: PlaybackStatus = PlaybackStatus.IDLE
    retry_count: int = 0
    routing: Optional[Routing] = None
    is_playing: bool = False
    url: Optional[str] = None
    active_quality: Optional[AudioQuality] = None
    lyrics: List[ParsedLyric] = field(default_factory=list)

    def index_of(self, song: Song) -> int:
        for index, queued in enumerate(self.queue):
            if queued.key == song.key:
                return index
        return -1


class PlaybackController:
    """
    Drives one playback attempt at a time:

        REQUESTED -> RESOLVING -> PLAYING
                              -> DEGRADING -> RESOLVING (once, at 128k)
                              -> FAILED

    The single automatic degrade covers both resolution dead-ends and
    engine-level failures; the budget is restored on manual selection.
    Results for a song that is no longer current are discarded.
    """

    def __init__(self, service: MusicService, output: AudioOutput,
                 store: Optional[KeyValueStore] = None, rng: Optional[random.Random] = None):
        self.service = service
        self.output = output
        self.store = store
        self.rng = rng or random.Random()
        self.state = PlayerState()
        self._restore()

    def _restore(self):
        if self.store is None:
            return
        try:
            self.state.quality = AudioQuality(load_json(self.store, QUALITY_KEY, AudioQuality.HIGH.value))
        except ValueError:
            logger.warning("Discarding unknown stored quality")
        try:
            self.state.mode = PlayMode(load_json(self.store, MODE_KEY, PlayMode.SEQUENCE.value))
        except ValueError:
            logger.warning("Discarding unknown stored play mode")
        queue = load_json(self.store, QUEUE_KEY, [])
        if isinstance(queue, list):
            for item in queue:
                try:
                    self.state.queue.append(Song.model_validate(item))
                except ValidationError:
                    logger.warning("Dropping malformed queued song")

    def _persist(self):
        if self.store is None:
            return
        save_json(self.store, QUEUE_KEY, [song.model_dump(by_alias=True) for song in self.state.queue])
        save_json(self.store, QUALITY_KEY, self.state.quality.value)
        save_json(self.store, MODE_KEY, self.state.mode.value)

    def _is_current(self, song: Song) -> bool:
        current = self.state.current
        return current is not None and current.key == song.key

    def _fail(self, song: Song, reason: str) -> bool:
        logger.error(f"Cannot play {song.source}:{song.id}: {reason}")
        self.state.status = PlaybackStatus.FAILED
        self.state.is_playing = False
        return False

    async def play(self, song: Song, quality: Optional[str] = None) -> bool:
        """Manual selection: becomes current, joins the queue, resolves."""
        self.state.current = song
        self.state.retry_count = 0
        self.state.status = PlaybackStatus.REQUESTED
        self.state.url = None
        self.state.lyrics = []
        if self.state.index_of(song) < 0:
            self.state.queue.append(song)
            self._persist()
        target = AudioQuality(quality) if quality else self.state.quality
        return await self._start(song, target)

    async def _start(self, song: Song, quality: AudioQuality) -> bool:
        if not song.is_resolvable:
            return self._fail(song, "placeholder identity")

        tier = quality
        while True:
            self.state.status = PlaybackStatus.RESOLVING
            result = await self.service.resolve(song, tier.value)
            if not self._is_current(song):
                logger.info(f"Discarding stale resolution for {song.source}:{song.id}")
                return False
            if result is not None and result.url:
                break
            if tier == LOWEST_QUALITY or self.state.retry_count >= MAX_AUTO_RETRIES:
                return self._fail(song, f"no playable url at {tier.value}")
            logger.warning(f"No url for {song.source}:{song.id} at {tier.value}, degrading to {LOWEST_QUALITY.value}")
            self.state.retry_count += 1
            self.state.status = PlaybackStatus.DEGRADING
            tier = LOWEST_QUALITY

        if result.pic and not song.pic:
            song.pic = result.pic
        self.state.lyrics = parse_lrc(result.lrc)
        return await self._load(song, result.url, tier)

    def _route(self, url: str) -> bool:
        instrumented = supports_cors(url)
        routing = Routing.INSTRUMENTED if instrumented else Routing.PLAIN
        if self.state.routing is not None and self.state.routing != routing:
            logger.info(f"Output routing changed to {routing.value}, rebuilding binding")
            self.output.rebuild(instrumented)
        self.state.routing = routing
        return instrumented

    async def _load(self, song: Song, url: str, tier: AudioQuality) -> bool:
        self.state.url = url
        self.state.active_quality = tier
        instrumented = self._route(url)
        try:
            await self.output.load(url, instrumented)
        except PlaybackEngineError as e:
            logger.warning(f"Engine rejected {song.source}:{song.id} at {tier.value}: {e}")
            if not self._is_current(song):
                return False
            return await self.on_playback_error()

        if not self._is_current(song):
            return False
        self.state.status = PlaybackStatus.PLAYING
        self.state.is_playing = True
        logger.info(f"Playing {song.source}:{song.id} at {tier.value} ({'instrumented' if instrumented else 'plain'})")
        return True

    async def on_playback_error(self) -> bool:
        """Engine-level failure of the current URL: degrade once, then give up."""
        song = self.state.current
        if song is None:
            return False
        self.state.is_playing = False
        if self.state.active_quality == LOWEST_QUALITY or self.state.retry_count >= MAX_AUTO_RETRIES:
            return self._fail(song, "playback failed")
        self.state.retry_count += 1
        self.state.status = PlaybackStatus.DEGRADING
        logger.warning(f"Playback failed for {song.source}:{song.id}, retrying at {LOWEST_QUALITY.value}")
        return await self._start(song, LOWEST_QUALITY)

    def toggle_play(self):
        if self.state.status != PlaybackStatus.PLAYING:
            return
        if self.state.is_playing:
            self.output.pause()
        else:
            self.output.resume()
        self.state.is_playing = not self.state.is_playing

    def _next_index(self, step: int) -> int:
        queue = self.state.queue
        current = self.state.index_of(self.state.current) if self.state.current else -1
        if self.state.mode == PlayMode.SHUFFLE:
            index = self.rng.randrange(len(queue))
            while step > 0 and len(queue) > 1 and index == current:
                index = self.rng.randrange(len(queue))
            return index
        return (current + step) % len(queue)

    async def play_next(self) -> bool:
        if not self.state.queue:
            return False
        return await self.play(self.state.queue[self._next_index(1)])

    async def play_prev(self) -> bool:
        if not self.state.queue:
            return False
        return await self.play(self.state.queue[self._next_index(-1)])

    async def on_track_end(self) -> bool:
        """End of track: loop restarts the current song, other modes advance."""
        if self.state.mode == PlayMode.LOOP and self.state.current is not None and self.state.url:
            self.output.seek(0)
            self.output.resume()
            self.state.is_playing = True
            return True
        return await self.play_next()

    def add_to_queue(self, song: Song):
        if self.state.index_of(song) < 0:
            self.state.queue.append(song)
            self._persist()

    def remove_from_queue(self, song: Song):
        self.state.queue = [queued for queued in self.state.queue if queued.key != song.key]
        self._persist()

    def clear_queue(self):
        self.state.queue = []
        self._persist()

    def toggle_mode(self) -> PlayMode:
        self.state.mode = self.state.mode.next()
        self._persist()
        return self.state.mode

    async def set_quality(self, quality: str) -> bool:
        """Change the preferred tier; a playing track is reloaded at it."""
        self.state.quality = AudioQuality(quality)
        self._persist()
        if self.state.current is not None and self.state.is_playing:
            return await self.play(self.state.current, self.state.quality.value)
        return False
