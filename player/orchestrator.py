"""
Playback orchestration.

Owns every playback intent: it picks tracks from the queue, resolves a
source through the cache, drives the engine, and recovers from stalls,
network failures and tracks that refuse to start. State changes go out on
the event bus; the orchestrator never persists anything itself.
"""

import concurrent.futures
import logging
import socket
import threading
from typing import Any, Callable, List, Optional

import requests

from player.cache import AudioCacheManager
from player.connectivity import Connectivity
from player.engine import AudioSource, LocalSource, StreamSource
from player.engine_adapter import PlaybackEngineAdapter
from player.events import EventBus, Subscription, Topic
from player.platform import WakeLock
from player.queue_manager import PlaybackQueue
from player.scheduler import Scheduler, TimerHandle
from player.skip_guard import SkipGuard
from shared.config import PlayerConfig
from shared.constants import NETWORK_ERROR_SIGNATURES
from shared.errors import (
    EngineSetupTimeout,
    NetworkUnavailable,
    QueueEmpty,
    TrackNotFound,
)
from shared.models import (
    Direction,
    PlaybackMode,
    PlaybackState,
    ProcessingState,
    Track,
)

logger = logging.getLogger(__name__)

_NETWORK_ERROR_TYPES = (
    NetworkUnavailable,
    requests.ConnectionError,
    requests.Timeout,
    ConnectionError,
    socket.timeout,
    socket.gaierror,
)


def is_network_error(error: BaseException) -> bool:
    """True when error looks like a connectivity failure, by type or message."""
    if isinstance(error, _NETWORK_ERROR_TYPES):
        return True
    text = f"{type(error).__name__} {error}".lower()
    return any(signature in text for signature in NETWORK_ERROR_SIGNATURES)


def _resolved(result: Any = None, error: Optional[BaseException] = None) -> concurrent.futures.Future:
    future = concurrent.futures.Future()
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)
    return future


class PlaybackOrchestrator:
    """
    Single coordinator for playback.

    Public intents return a concurrent.futures.Future where they start
    background work. play_track's future resolves True once audio started and
    False when the attempt was superseded or handed to recovery.
    """

    def __init__(self, queue: PlaybackQueue, cache: AudioCacheManager,
                 adapter: PlaybackEngineAdapter, bus: EventBus,
                 scheduler: Scheduler, connectivity: Connectivity,
                 wake_lock: WakeLock, stream_url: Callable[[str], str],
                 config: Optional[PlayerConfig] = None):
        self.config = config or PlayerConfig()
        self._queue = queue
        self._cache = cache
        self._adapter = adapter
        self._engine = adapter.engine
        self._bus = bus
        self._scheduler = scheduler
        self._connectivity = connectivity
        self._wake_lock = wake_lock
        self._stream_url = stream_url

        self._lock = threading.RLock()
        self._skip_guard = SkipGuard(scheduler.now, self.config.skip_guard_timeout)

        self._current_track: Optional[Track] = None
        self._current_source: Optional[AudioSource] = None
        self._current_download: Optional[concurrent.futures.Future] = None
        self._loading_generation: Optional[int] = None
        self._load_error: Optional[BaseException] = None
        self._generation = 0
        self._last_processing_state = ProcessingState.IDLE
        self._consecutive_failures = 0

        self._had_network_error = False
        self._retry_count = 0
        self._retry_handle: Optional[TimerHandle] = None

        self._last_buffer_sample: Optional[int] = None
        self._stall_active = False
        self._stall_resume_handle: Optional[TimerHandle] = None

        self._background = False
        self._watchdog_handle: Optional[TimerHandle] = None
        self._stall_handle: Optional[TimerHandle] = None
        self._connectivity_handle: Optional[TimerHandle] = None
        self._subscriptions: List[Subscription] = []
        self._started = False

    # Lifecycle

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
        self._subscriptions.append(self._bus.subscribe(Topic.STATE, self._on_state))
        self._adapter.set_error_callback(self._on_engine_error)
        self._stall_handle = self._scheduler.call_every(
            self.config.stall_check_interval, self._sample_buffer)
        self._connectivity_handle = self._scheduler.call_every(
            self.config.connectivity_check_interval, self._check_connectivity)
        logger.debug("Playback orchestrator started")

    def shutdown(self) -> None:
        """Stop every timer and subscription and release the wake lock."""
        with self._lock:
            if not self._started:
                return
            self._started = False
            self._generation += 1
            handles = [self._stall_handle, self._connectivity_handle, self._watchdog_handle,
                       self._retry_handle, self._stall_resume_handle]
            self._stall_handle = self._connectivity_handle = self._watchdog_handle = None
            self._retry_handle = self._stall_resume_handle = None
            subscriptions, self._subscriptions = self._subscriptions, []
        for handle in handles:
            if handle is not None:
                handle.cancel()
        for subscription in subscriptions:
            subscription.cancel()
        self._adapter.set_error_callback(None)
        self._wake_lock.release()
        try:
            self._engine.stop()
        except Exception as e:
            logger.warning("Error stopping engine on shutdown: %s", e)
        logger.debug("Playback orchestrator shut down")

    # Read-only state

    @property
    def current_track(self) -> Optional[Track]:
        return self._current_track

    @property
    def queue(self) -> PlaybackQueue:
        return self._queue

    @property
    def mode(self) -> PlaybackMode:
        return self._queue.mode

    @property
    def state(self) -> PlaybackState:
        return self._adapter.snapshot()

    @property
    def background(self) -> bool:
        return self._background

    @property
    def had_network_error(self) -> bool:
        return self._had_network_error

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def lookahead(self) -> int:
        if self._background:
            return self.config.lookahead_background
        return self.config.lookahead_foreground

    # Intents

    def play_track(self, track: Track) -> concurrent.futures.Future:
        """Make track current and start it. Superseded attempts resolve False."""
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._current_track = track
            self._last_buffer_sample = None
            self._stall_active = False
        self._queue.locate(track.id)
        self._bus.publish(Topic.TRACK, track)
        self._adapter.reset_buffering()
        logger.info("Playing %s - %s", track.artist, track.title)
        return self._scheduler.run_async(self._start_playback, track, generation)

    def play_track_id(self, track_id: str) -> concurrent.futures.Future:
        for track in self._queue.active_ordering:
            if track.id == track_id:
                return self.play_track(track)
        self._notice("That track is not in the current queue")
        return _resolved(error=TrackNotFound("Track is not in the active queue", track_id))

    def start_playlist(self, tracks: List[Track], start_track_id: Optional[str] = None,
                       autoplay: bool = True) -> concurrent.futures.Future:
        """Load tracks into the queue and play from start_track_id (or the top)."""
        self._queue.set_source(tracks, start_track_id)
        current = self._queue.current_track
        if current is None:
            self._notice("Nothing to play: every track is ignored or the playlist is empty")
            return _resolved(error=QueueEmpty("No playable tracks"))
        self._bus.publish(Topic.MODE, self._queue.mode)
        if not autoplay:
            with self._lock:
                self._current_track = current
            self._bus.publish(Topic.TRACK, current)
            return _resolved(False)
        return self.play_track(current)

    def next(self) -> concurrent.futures.Future:
        return self._skip(Direction.NEXT)

    def previous(self) -> concurrent.futures.Future:
        return self._skip(Direction.PREVIOUS)

    def toggle_playback(self) -> concurrent.futures.Future:
        """Pause if playing, else resume. No-op without a current track."""
        if self._current_track is None:
            return _resolved(False)
        if self._adapter.is_playing:
            return self._scheduler.run_async(self._pause)
        if self._adapter.processing_state == ProcessingState.IDLE:
            # Nothing loaded (stopped or given up), start the track again
            return self.play_track(self._current_track)
        return self._scheduler.run_async(self._resume)

    def stop(self) -> concurrent.futures.Future:
        """Stop the engine, keeping the current track for a later resume."""
        with self._lock:
            self._generation += 1
        return self._scheduler.run_async(self._stop)

    def replay_current(self) -> concurrent.futures.Future:
        """Restart the current track from zero."""
        if self._current_track is None:
            return _resolved(False)
        return self._scheduler.run_async(self._replay)

    def seek(self, position: float) -> concurrent.futures.Future:
        if self._current_track is None:
            return _resolved(False)
        return self._scheduler.run_async(self._seek, max(0.0, position))

    def toggle_mode(self) -> PlaybackMode:
        mode = self._queue.toggle_mode()
        self._engine.set_looping(mode == PlaybackMode.LOOP)
        self._bus.publish(Topic.MODE, mode)
        logger.info("Playback mode: %s", mode.value)
        return mode

    def set_background_mode(self, background: bool) -> None:
        with self._lock:
            if background == self._background:
                return
            self._background = background
            old_watchdog, self._watchdog_handle = self._watchdog_handle, None
            if background:
                self._watchdog_handle = self._scheduler.call_every(
                    self.config.watchdog_interval, self._watchdog_tick)
        if old_watchdog is not None:
            old_watchdog.cancel()

        if background:
            logger.debug("Entering background mode")
            if self._adapter.is_playing:
                self._wake_lock.acquire()
            self._precache_upcoming()
        else:
            logger.debug("Returning to foreground")
            if not self._adapter.is_playing:
                self._wake_lock.release()
            self._adapter.republish()
            self._bus.publish(Topic.TRACK, self._current_track)
            self._bus.publish(Topic.MODE, self._queue.mode)

    # Playback internals

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _resolve_source(self, track: Track) -> AudioSource:
        path = self._cache.cache_file(track.id)
        if path is not None:
            logger.debug("Cache hit for %s", track.id)
            source = LocalSource.from_path(track.id, path)
            download = None
        else:
            logger.debug("Cache miss for %s, streaming", track.id)
            download = self._cache.download_and_cache(track)
            download.add_done_callback(self._log_download)
            source = StreamSource(track_id=track.id, uri=self._stream_url(track.id))
        with self._lock:
            self._current_source = source
            self._current_download = download
        return source

    @staticmethod
    def _log_download(future: concurrent.futures.Future) -> None:
        error = future.exception()
        if error is not None:
            logger.info("Background download failed: %s", error)

    def _start_playback(self, track: Track, generation: int) -> bool:
        if not self._is_current(generation):
            return False
        try:
            self._engine.stop()
            source = self._resolve_source(track)
            with self._lock:
                self._loading_generation = generation
                self._load_error = None
            try:
                self._engine.load(source)
            finally:
                with self._lock:
                    self._loading_generation = None
                    load_error, self._load_error = self._load_error, None
            if load_error is not None:
                # Engine reported the failure through its listener
                raise load_error
            if not self._is_current(generation):
                logger.debug("Dropping stale load of %s", track.id)
                return False
            self._engine.play()
        except Exception as e:
            if not self._is_current(generation):
                logger.debug("Ignoring failure of superseded load of %s: %s", track.id, e)
                return False
            self._handle_playback_error(track, e)
            return False

        with self._lock:
            self._consecutive_failures = 0
            self._had_network_error = False
        if self._background:
            self._wake_lock.acquire()
        self._precache_upcoming()
        return True

    def _skip(self, direction: Direction) -> concurrent.futures.Future:
        if self._queue.mode == PlaybackMode.LOOP:
            return self.replay_current()

        token = self._skip_guard.try_acquire()
        if token is None:
            logger.debug("Skip dropped, another skip is in flight")
            return _resolved(False)
        stuck_timer = self._scheduler.call_later(
            self.config.skip_guard_timeout, self._skip_guard.release_if_stuck, token)

        track = self._queue.advance(direction)
        if track is None:
            stuck_timer.cancel()
            self._skip_guard.release(token)
            self._notice("Nothing to play: the queue is empty")
            return _resolved(error=QueueEmpty("Queue is empty"))

        future = self.play_track(track)
        future.add_done_callback(lambda f: self._skip_finished(f, token, stuck_timer))
        return future

    def _skip_finished(self, future: concurrent.futures.Future, token: int,
                       stuck_timer: TimerHandle) -> None:
        stuck_timer.cancel()
        started = not future.cancelled() and future.exception() is None and future.result()
        if started:
            # Absorb double taps before accepting the next skip
            self._scheduler.call_later(self.config.skip_release_delay,
                                       self._skip_guard.release, token)
        else:
            self._skip_guard.release(token)

    def _pause(self) -> bool:
        self._engine.pause()
        self._wake_lock.release()
        return True

    def _resume(self) -> bool:
        self._engine.play()
        if self._background:
            self._wake_lock.acquire()
        return True

    def _stop(self) -> bool:
        self._engine.stop()
        self._wake_lock.release()
        return True

    def _replay(self) -> bool:
        self._engine.seek(0.0)
        self._engine.play()
        return True

    def _seek(self, position: float) -> bool:
        self._engine.seek(position)
        return True

    def _precache_upcoming(self) -> None:
        count = self.lookahead
        upcoming = self._queue.upcoming(count)
        if not upcoming:
            return
        future = self._scheduler.run_async(self._cache.preload_batch, upcoming, count)
        future.add_done_callback(self._log_precache)

    @staticmethod
    def _log_precache(future: concurrent.futures.Future) -> None:
        error = future.exception()
        if error is not None:
            logger.warning("Look-ahead pre-cache failed: %s", error)
        else:
            logger.debug("Look-ahead pre-cached %s tracks", future.result())

    def _notice(self, message: str) -> None:
        logger.info("Notice: %s", message)
        self._bus.publish(Topic.NOTICE, message)

    # Engine feedback

    def _on_state(self, state: PlaybackState) -> None:
        with self._lock:
            previous = self._last_processing_state
            self._last_processing_state = state.processing_state
        if state.processing_state == previous:
            return

        if state.processing_state == ProcessingState.READY:
            with self._lock:
                self._retry_count = 0
        elif state.processing_state == ProcessingState.COMPLETED:
            self._on_completed()

        if state.is_playing and self._background:
            self._wake_lock.acquire()

    def _on_completed(self) -> None:
        if self._current_track is None:
            return
        if self._queue.mode == PlaybackMode.LOOP:
            logger.debug("Track completed, looping")
            self.replay_current()
        else:
            logger.debug("Track completed, advancing")
            self.next()

    def _on_engine_error(self, error: BaseException) -> None:
        with self._lock:
            if self._loading_generation is not None:
                if self._loading_generation == self._generation and self._load_error is None:
                    self._load_error = error
                return
        track = self._current_track
        if track is None:
            return
        self._handle_playback_error(track, error)

    def _handle_playback_error(self, track: Track, error: BaseException) -> None:
        if isinstance(error, EngineSetupTimeout):
            if self._had_network_error:
                logger.warning("Setup timed out after a network error, retrying %s", track.id)
                self._schedule_network_retry(track)
                return
        elif self._is_network_failure(error):
            logger.warning("Network error playing %s: %s", track.id, error)
            with self._lock:
                self._had_network_error = True
            self._schedule_network_retry(track)
            return
        self._handle_track_failure(track, error)

    def _is_network_failure(self, error: BaseException) -> bool:
        """
        Classify a failure as a connectivity problem.

        mpv reports a dead stream as a generic file error, so for streamed
        sources the download running alongside and the device's network
        state decide.
        """
        if is_network_error(error):
            return True
        with self._lock:
            source = self._current_source
            download = self._current_download
        if not isinstance(source, StreamSource):
            return False
        if download is not None and download.done() and not download.cancelled():
            if isinstance(download.exception(), NetworkUnavailable):
                return True
        return not self._connectivity.is_online()

    def _handle_track_failure(self, track: Track, error: BaseException) -> None:
        """Skip past a track that will not play."""
        logger.warning("Could not play %s: %s", track.id, error)
        with self._lock:
            self._consecutive_failures += 1
            failures = self._consecutive_failures
        limit = max(1, self._queue.size())

        if self._queue.mode == PlaybackMode.LOOP:
            self._stop_with_notice(track, "this track can't be played")
        elif failures >= limit:
            self._stop_with_notice(track, "no track in the queue could be played")
        else:
            self._scheduler.call_later(self.config.skip_retry_delay, self.next)

    def _stop_with_notice(self, track: Track, cause: str) -> None:
        with self._lock:
            self._consecutive_failures = 0
        try:
            self._engine.stop()
        except Exception as e:
            logger.warning("Error stopping engine: %s", e)
        self._wake_lock.release()
        self._notice(f"Couldn't play \"{track.title}\": {cause}")

    # Network retry

    def _schedule_network_retry(self, track: Track) -> None:
        with self._lock:
            if self._retry_count >= self.config.max_playback_retries:
                attempt = None
            else:
                self._retry_count += 1
                attempt = self._retry_count
                old_handle = self._retry_handle
                delay = 2 ** attempt
                self._retry_handle = self._scheduler.call_later(delay, self._retry_track, track)
        if attempt is None:
            logger.warning("Giving up on %s after %d network retries",
                           track.id, self.config.max_playback_retries)
            self._stop_with_notice(track, "network unavailable")
            return
        if old_handle is not None:
            old_handle.cancel()
        logger.info("Retrying %s in %ds (attempt %d/%d)",
                    track.id, delay, attempt, self.config.max_playback_retries)

    def _retry_track(self, track: Track) -> None:
        with self._lock:
            self._retry_handle = None
            current = self._current_track
        if current is None or current.id != track.id:
            logger.debug("Skipping retry of %s, track changed", track.id)
            return
        self.play_track(current)

    def _check_connectivity(self) -> None:
        if not self._had_network_error:
            return
        if not self._connectivity.probe():
            logger.debug("API host still unreachable")
            return

        with self._lock:
            self._had_network_error = False
            self._retry_count = 0
            handle, self._retry_handle = self._retry_handle, None
            current = self._current_track
        if handle is not None:
            handle.cancel()

        logger.info("Network is back, resuming playback")
        if self._adapter.processing_state == ProcessingState.COMPLETED:
            self.next()
        elif current is not None:
            self.play_track(current)

    # Periodic checks

    def _sample_buffer(self) -> None:
        """Pause and resume when buffering has not moved for a whole window."""
        if not self._adapter.is_playing:
            if self._stall_resume_handle is None:
                self._last_buffer_sample = None
                self._stall_active = False
            return

        percent = int(self._adapter.buffering_fraction * 100)
        with self._lock:
            previous = self._last_buffer_sample
            self._last_buffer_sample = percent
            stalled = (previous is not None and percent == previous
                       and percent < self.config.stall_threshold_percent)
            if not stalled:
                self._stall_active = False
                return
            if self._stall_active:
                return
            self._stall_active = True
            generation = self._generation

        logger.info("Buffer stalled at %d%%, nudging playback", percent)
        self._engine.pause()
        self._stall_resume_handle = self._scheduler.call_later(
            self.config.stall_resume_delay, self._resume_after_stall, generation)

    def _resume_after_stall(self, generation: int) -> None:
        self._stall_resume_handle = None
        if self._is_current(generation):
            self._engine.play()

    def _watchdog_tick(self) -> None:
        if self._adapter.processing_state != ProcessingState.COMPLETED:
            return
        logger.warning("Playback stuck at completed, forcing advance")
        if self._queue.mode == PlaybackMode.LOOP:
            self.replay_current()
        else:
            self.next()
