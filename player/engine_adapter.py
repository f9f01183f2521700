"""
State translation between the raw audio engine and the playback core.

No retry logic lives here: the adapter turns raw engine events into
PlaybackState snapshots, buffering fractions and position ticks, and hands
engine errors to whoever registered for them.
"""

import logging
import threading
from typing import Callable, Optional

from player.engine import (
    AudioEngine,
    EngineEvent,
    EVENT_ERROR,
    EVENT_POSITION,
    STATE_BUFFERING,
    STATE_COMPLETED,
    STATE_IDLE,
    STATE_LOADING,
    STATE_READY,
)
from player.events import EventBus, Topic
from shared.models import PlaybackState, ProcessingState

logger = logging.getLogger(__name__)

NATIVE_STATE_MAP = {
    STATE_IDLE: ProcessingState.IDLE,
    STATE_LOADING: ProcessingState.LOADING,
    STATE_BUFFERING: ProcessingState.BUFFERING,
    STATE_READY: ProcessingState.READY,
    STATE_COMPLETED: ProcessingState.COMPLETED,
}


def convert_processing_state(native: str) -> ProcessingState:
    return NATIVE_STATE_MAP.get(native, ProcessingState.IDLE)


class PlaybackEngineAdapter:
    """Publishes engine activity on the event bus."""

    def __init__(self, engine: AudioEngine, bus: EventBus,
                 on_error: Optional[Callable[[BaseException], None]] = None):
        self.engine = engine
        self._bus = bus
        self._on_error = on_error
        self._lock = threading.Lock()

        self._is_playing = False
        self._processing_state = ProcessingState.IDLE
        self._position = 0.0
        self._buffering_fraction = 0.0

        engine.set_listener(self.handle_event)

    def set_error_callback(self, callback: Optional[Callable[[BaseException], None]]) -> None:
        self._on_error = callback

    @property
    def is_playing(self) -> bool:
        return self._is_playing

    @property
    def processing_state(self) -> ProcessingState:
        return self._processing_state

    @property
    def buffering_fraction(self) -> float:
        return self._buffering_fraction

    @property
    def position(self) -> float:
        return self._position

    def snapshot(self) -> PlaybackState:
        with self._lock:
            return PlaybackState(
                is_playing=self._is_playing,
                processing_state=self._processing_state,
                position=self._position,
                buffering_fraction=self._buffering_fraction,
            )

    def reset_buffering(self) -> None:
        with self._lock:
            self._buffering_fraction = 0.0
            self._position = 0.0
        self._bus.publish(Topic.BUFFERING, 0.0)

    def republish(self) -> None:
        """Re-send the current snapshot, e.g. for a UI that missed events."""
        self._bus.publish(Topic.STATE, self.snapshot())
        self._bus.publish(Topic.BUFFERING, self._buffering_fraction)

    def handle_event(self, event: EngineEvent) -> None:
        if event.kind == EVENT_ERROR:
            logger.debug("Engine reported error: %s", event.error)
            if self._on_error is not None and event.error is not None:
                self._on_error(event.error)
            return

        fraction_changed = False
        with self._lock:
            self._is_playing = bool(event.playing)
            self._processing_state = convert_processing_state(event.state)
            self._position = max(0.0, event.position)
            if event.duration is not None and event.duration > 0:
                fraction = max(0.0, min(1.0, event.buffered_position / event.duration))
                fraction_changed = fraction != self._buffering_fraction
                self._buffering_fraction = fraction
            state = PlaybackState(
                is_playing=self._is_playing,
                processing_state=self._processing_state,
                position=self._position,
                buffering_fraction=self._buffering_fraction,
            )

        if fraction_changed:
            self._bus.publish(Topic.BUFFERING, state.buffering_fraction)
        if event.kind == EVENT_POSITION:
            self._bus.publish(Topic.POSITION, state.position)
        self._bus.publish(Topic.STATE, state)
