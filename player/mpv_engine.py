"""
Audio engine backed by python-mpv.
Translates mpv property changes into EngineEvents for the adapter.
"""

import logging
import threading
import time
from typing import Optional

import mpv

from player.engine import (
    AudioEngine,
    AudioSource,
    EngineEvent,
    EngineListener,
    EVENT_ERROR,
    EVENT_PLAYBACK,
    EVENT_POSITION,
    EVENT_PROCESSING,
    STATE_BUFFERING,
    STATE_COMPLETED,
    STATE_IDLE,
    STATE_LOADING,
    STATE_READY,
)
from shared.constants import ENGINE_SETUP_TIMEOUT
from shared.errors import EngineSetupTimeout, PlaybackError

logger = logging.getLogger(__name__)

# end-file reasons arrive as ints on MpvEventEndFile
_END_FILE_REASONS = {
    mpv.MpvEventEndFile.EOF: "eof",
    mpv.MpvEventEndFile.ERROR: "error",
}


class MpvAudioEngine(AudioEngine):
    """Wrapper around MPV for audio-only playback."""

    def __init__(self, volume: int = 100, load_timeout: float = ENGINE_SETUP_TIMEOUT):
        # vo='null' because we are audio-only; we provide direct URLs
        self.player = mpv.MPV(vo='null', ytdl=False, cache='yes')
        self.player.volume = max(0, min(100, volume))
        self._load_timeout = load_timeout
        self._listener: Optional[EngineListener] = None
        self._lock = threading.RLock()

        self._state = STATE_IDLE
        self._position = 0.0
        self._duration: Optional[float] = None
        self._buffered = 0.0
        self._loaded = threading.Event()
        self._loading = False
        self._load_error: Optional[BaseException] = None
        self._source: Optional[AudioSource] = None

        # Throttling for position updates
        self._last_time_update = 0.0

        self.player.observe_property('time-pos', self._handle_time_pos)
        self.player.observe_property('duration', self._handle_duration)
        self.player.observe_property('demuxer-cache-time', self._handle_cache_time)
        self.player.observe_property('paused-for-cache', self._handle_paused_for_cache)
        self.player.observe_property('eof-reached', self._handle_eof)
        self.player.observe_property('pause', self._handle_pause)

        @self.player.event_callback('end-file')
        def _on_end_file(event):
            self._handle_end_file(event)

    def set_listener(self, listener: Optional[EngineListener]) -> None:
        self._listener = listener

    @property
    def is_playing(self) -> bool:
        return self._state in (STATE_READY, STATE_BUFFERING) and not bool(self.player.pause)

    def load(self, source: AudioSource) -> Optional[float]:
        with self._lock:
            self._loaded.clear()
            self._loading = True
            self._load_error = None
            self._source = source
            self._duration = None
            self._buffered = 0.0
            self._position = 0.0
            self._set_state(STATE_LOADING)
            self.player.pause = True
            self.player.loadfile(source.uri, 'replace')
        loaded = self._loaded.wait(self._load_timeout)
        with self._lock:
            self._loading = False
            error, self._load_error = self._load_error, None
        if error is not None:
            raise error
        if not loaded:
            raise EngineSetupTimeout(f"mpv did not load {source.uri} within {self._load_timeout}s",
                                     track_id=source.track_id)
        return self._duration

    def play(self) -> None:
        self.player.pause = False
        self._emit(EVENT_PLAYBACK)

    def pause(self) -> None:
        self.player.pause = True
        self._emit(EVENT_PLAYBACK)

    def stop(self) -> None:
        self.player.stop()
        self._position = 0.0
        self._set_state(STATE_IDLE)

    def seek(self, position: float) -> None:
        try:
            self.player.seek(max(0.0, position), reference='absolute')
        except Exception as e:
            logger.warning("Error seeking to %.1fs: %s", position, e)
            return
        if self._state == STATE_COMPLETED:
            self._set_state(STATE_READY)

    def set_looping(self, looping: bool) -> None:
        self.player.loop_file = 'inf' if looping else 'no'

    def set_volume(self, level: int) -> None:
        self.player.volume = max(0, min(100, level))

    def close(self) -> None:
        self._listener = None
        self.player.terminate()

    # Event plumbing

    def _snapshot(self, kind: str, error: Optional[BaseException] = None) -> EngineEvent:
        return EngineEvent(
            kind=kind,
            playing=self.is_playing,
            state=self._state,
            position=self._position,
            buffered_position=self._buffered,
            duration=self._duration,
            error=error,
        )

    def _emit(self, kind: str, error: Optional[BaseException] = None) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            listener(self._snapshot(kind, error))
        except Exception:
            logger.exception("Engine listener failed")

    def _set_state(self, state: str) -> None:
        if state != self._state:
            self._state = state
            self._emit(EVENT_PROCESSING)

    def _handle_time_pos(self, name, value):
        if value is None:
            return
        self._position = float(value)
        # Throttle to ~4 updates per second
        now = time.monotonic()
        if now - self._last_time_update >= 0.25:
            self._last_time_update = now
            self._emit(EVENT_POSITION)

    def _handle_duration(self, name, value):
        if value is None:
            return
        self._duration = float(value)
        if self._state == STATE_LOADING:
            self._set_state(STATE_READY)
        self._loaded.set()

    def _handle_cache_time(self, name, value):
        if value is None:
            return
        # Absolute timestamp of the end of the demuxer cache
        self._buffered = float(value)
        self._emit(EVENT_PLAYBACK)

    def _handle_paused_for_cache(self, name, value):
        if self._state in (STATE_READY, STATE_BUFFERING):
            self._set_state(STATE_BUFFERING if value else STATE_READY)

    def _handle_eof(self, name, value):
        if value:
            self._set_state(STATE_COMPLETED)

    def _handle_pause(self, name, value):
        if value is not None:
            self._emit(EVENT_PLAYBACK)

    def _handle_end_file(self, event):
        data = getattr(event, 'data', None)
        reason = getattr(data, 'reason', None)
        if isinstance(reason, int):
            reason_name = _END_FILE_REASONS.get(reason, str(reason))
        else:
            reason_name = str(getattr(reason, 'name', reason) or '').lower()

        if 'error' in reason_name:
            error_code = getattr(data, 'error', None)
            source = self._source
            error = PlaybackError(f"mpv failed to play file (error={error_code})",
                                  track_id=source.track_id if source else None)
            logger.warning("%s", error)
            with self._lock:
                pending = self._loading
                if pending:
                    self._load_error = error
            self._set_state(STATE_IDLE)
            if pending:
                # load() raises it
                self._loaded.set()
            else:
                self._emit(EVENT_ERROR, error)
        elif 'eof' in reason_name:
            self._set_state(STATE_COMPLETED)
