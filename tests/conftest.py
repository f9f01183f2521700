"""
Shared fixtures: a manual clock scheduler, an inline executor and fakes for
the engine, cache and connectivity.
"""

import concurrent.futures
import heapq
import itertools
from pathlib import Path
from typing import List, Optional

import pytest

from player.engine import (
    AudioEngine,
    AudioSource,
    EngineEvent,
    EVENT_ERROR,
    EVENT_PLAYBACK,
    EVENT_POSITION,
    EVENT_PROCESSING,
    STATE_COMPLETED,
    STATE_IDLE,
    STATE_LOADING,
    STATE_READY,
)
from player.engine_adapter import PlaybackEngineAdapter
from player.events import EventBus, Topic
from player.orchestrator import PlaybackOrchestrator
from player.platform import NullWakeLock
from player.queue_manager import PlaybackQueue
from player.scheduler import Scheduler, TimerHandle
from shared.config import PlayerConfig
from shared.models import Track

STREAM_BASE = "https://api.test/stream"


def stream_url(track_id: str) -> str:
    return f"{STREAM_BASE}/{track_id}"


class ManualScheduler(Scheduler):
    """
    Deterministic scheduler driven by advance().

    run_async runs inline unless `defer` is set, in which case the task is
    parked in `deferred` and its future never completes on its own.
    """

    def __init__(self):
        self._now = 0.0
        self._timers = []
        self._seq = itertools.count()
        self.defer = False
        self.deferred: List[tuple] = []
        self.closed = False

    def now(self) -> float:
        return self._now

    def call_later(self, delay, callback, *args) -> TimerHandle:
        handle = TimerHandle()
        heapq.heappush(self._timers, (self._now + delay, next(self._seq), None, handle, callback, args))
        return handle

    def call_every(self, interval, callback, *args) -> TimerHandle:
        handle = TimerHandle()
        heapq.heappush(self._timers, (self._now + interval, next(self._seq), interval, handle, callback, args))
        return handle

    def run_async(self, fn, *args, **kwargs) -> concurrent.futures.Future:
        future = concurrent.futures.Future()
        if self.defer:
            self.deferred.append((future, fn, args, kwargs))
            return future
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self._now + seconds
        while self._timers and self._timers[0][0] <= target:
            due, _, interval, handle, callback, args = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._now = due
            if interval is not None:
                heapq.heappush(self._timers, (due + interval, next(self._seq), interval, handle, callback, args))
            else:
                handle.cancel()
            callback(*args)
        self._now = target

    def pending_timers(self) -> int:
        return sum(1 for t in self._timers if not t[3].cancelled)

    def shutdown(self) -> None:
        self.closed = True
        for timer in self._timers:
            timer[3].cancel()


class InlineExecutor(concurrent.futures.Executor):
    """Runs submitted work on the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = concurrent.futures.Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class FakeEngine(AudioEngine):
    """Scriptable engine that reports through the listener like a real one."""

    def __init__(self):
        self.listener = None
        self.loaded: List[AudioSource] = []
        self.seeks: List[float] = []
        self.calls: List[str] = []
        self.looping = False
        self.playing = False
        self.state = STATE_IDLE
        self.position = 0.0
        self.buffered = 0.0
        self.duration: Optional[float] = 200.0
        self.load_error: Optional[BaseException] = None
        self.load_errors: dict = {}

    def set_listener(self, listener):
        self.listener = listener

    def emit(self, kind=EVENT_PLAYBACK, error=None):
        if self.listener is not None:
            self.listener(EngineEvent(kind=kind, playing=self.playing, state=self.state,
                                      position=self.position, buffered_position=self.buffered,
                                      duration=self.duration, error=error))

    def _set_state(self, state):
        self.state = state
        self.emit(EVENT_PROCESSING)

    @property
    def is_playing(self):
        return self.playing

    def load(self, source):
        self.calls.append("load")
        self.loaded.append(source)
        self.position = 0.0
        self.buffered = 0.0
        self._set_state(STATE_LOADING)
        error = self.load_errors.get(source.track_id, self.load_error)
        if error is not None:
            self._set_state(STATE_IDLE)
            raise error
        self._set_state(STATE_READY)
        return self.duration

    def play(self):
        self.calls.append("play")
        self.playing = True
        self.emit()

    def pause(self):
        self.calls.append("pause")
        self.playing = False
        self.emit()

    def stop(self):
        self.calls.append("stop")
        self.playing = False
        self.position = 0.0
        if self.state != STATE_IDLE:
            self._set_state(STATE_IDLE)

    def seek(self, position):
        self.calls.append("seek")
        self.seeks.append(position)
        self.position = position
        if self.state == STATE_COMPLETED:
            self._set_state(STATE_READY)

    def set_looping(self, looping):
        self.looping = looping

    # Test helpers

    def complete(self):
        self.playing = False
        self._set_state(STATE_COMPLETED)

    def set_buffer(self, fraction):
        self.buffered = fraction * (self.duration or 0)
        self.emit()

    def tick(self, position):
        self.position = position
        self.emit(EVENT_POSITION)

    def fail(self, error):
        self.emit(EVENT_ERROR, error)

    @property
    def current_id(self):
        return self.loaded[-1].track_id if self.loaded else None


class MpvLikeEngine(FakeEngine):
    """Reports a file that will not open as an error event, then returns from load()."""

    def load(self, source):
        self.calls.append("load")
        self.loaded.append(source)
        self.position = 0.0
        self.buffered = 0.0
        self._set_state(STATE_LOADING)
        error = self.load_errors.get(source.track_id, self.load_error)
        if error is not None:
            self._set_state(STATE_IDLE)
            self.emit(EVENT_ERROR, error)
            return None
        self._set_state(STATE_READY)
        return self.duration


class FakeCache:
    """Cache stand-in that records what the orchestrator asks for."""

    def __init__(self):
        self.files = {}
        self.download_requests: List[str] = []
        self.preloads: List[tuple] = []
        self.download_error: Optional[BaseException] = None

    def cache_file(self, track_id):
        return self.files.get(track_id)

    def is_cached(self, track_id):
        return track_id in self.files

    def download_and_cache(self, track):
        self.download_requests.append(track.id)
        future = concurrent.futures.Future()
        if self.download_error is not None:
            future.set_exception(self.download_error)
        else:
            future.set_result(Path(f"/cache/{track.id}.mp3"))
        return future

    def preload_batch(self, tracks, limit):
        self.preloads.append(([t.id for t in tracks], limit))
        return 0


class FakeConnectivity:
    def __init__(self, online=True, reachable=True):
        self.online = online
        self.reachable = reachable
        self.probes = 0

    def is_online(self):
        return self.online

    def probe(self):
        self.probes += 1
        return self.reachable


class RecordingWakeLock(NullWakeLock):
    def __init__(self):
        super().__init__()
        self.acquisitions = 0
        self.releases = 0

    def _do_acquire(self):
        self.acquisitions += 1

    def _do_release(self):
        self.releases += 1


def make_tracks(*ids: str) -> List[Track]:
    return [Track(id=i, title=f"Song {i}", artist=f"Artist {i}") for i in ids]


@pytest.fixture
def tracks():
    return make_tracks("A", "B", "C")


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def connectivity():
    return FakeConnectivity()


@pytest.fixture
def wake_lock():
    return RecordingWakeLock()


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def events(bus):
    """Every published payload, by topic."""
    recorded = {topic: [] for topic in Topic}
    for topic in Topic:
        bus.subscribe(topic, recorded[topic].append)
    return recorded


@pytest.fixture
def make_orchestrator(scheduler, engine, bus, connectivity, wake_lock, fake_cache):
    def build(cache=None, config=None, queue=None, start=True):
        adapter = PlaybackEngineAdapter(engine, bus)
        orchestrator = PlaybackOrchestrator(
            queue or PlaybackQueue(),
            cache or fake_cache,
            adapter,
            bus,
            scheduler,
            connectivity,
            wake_lock,
            stream_url=stream_url,
            config=config or PlayerConfig(),
        )
        if start:
            orchestrator.start()
        return orchestrator
    return build
