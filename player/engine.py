"""
Audio engine interface.

The decode/output engine is a black box that can load a source, play,
pause, seek and report position, buffering and completion through a single
listener callback. MpvAudioEngine (player.mpv_engine) is the production
implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

# Native processing states reported by engines
STATE_IDLE = "idle"
STATE_LOADING = "loading"
STATE_BUFFERING = "buffering"
STATE_READY = "ready"
STATE_COMPLETED = "completed"

# Event kinds
EVENT_PLAYBACK = "playback"
EVENT_PROCESSING = "processing"
EVENT_POSITION = "position"
EVENT_ERROR = "error"


@dataclass(frozen=True)
class AudioSource:
    """Something the engine can load."""
    track_id: str
    uri: str

    @property
    def is_local(self) -> bool:
        return False


@dataclass(frozen=True)
class LocalSource(AudioSource):
    """A cached file on disk."""

    @classmethod
    def from_path(cls, track_id: str, path: Path) -> 'LocalSource':
        return cls(track_id=track_id, uri=str(path))

    @property
    def is_local(self) -> bool:
        return True


@dataclass(frozen=True)
class StreamSource(AudioSource):
    """A progressive network stream."""


@dataclass(frozen=True)
class EngineEvent:
    """
    Raw event from the engine.

    Every event carries the engine's full view at the time it was raised so
    listeners never have to query the engine back.
    """
    kind: str
    playing: bool = False
    state: str = STATE_IDLE
    position: float = 0.0
    buffered_position: float = 0.0
    duration: Optional[float] = None
    error: Optional[BaseException] = None


EngineListener = Callable[[EngineEvent], None]


class AudioEngine(ABC):
    """Interface the playback core drives."""

    @abstractmethod
    def set_listener(self, listener: Optional[EngineListener]) -> None:
        """Register the single raw event listener."""

    @abstractmethod
    def load(self, source: AudioSource) -> Optional[float]:
        """Load a source, blocking until it is ready. Returns duration if known."""

    @abstractmethod
    def play(self) -> None:
        pass

    @abstractmethod
    def pause(self) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def seek(self, position: float) -> None:
        """Seek to absolute position in seconds."""

    @abstractmethod
    def set_looping(self, looping: bool) -> None:
        """Native single-track loop flag."""

    @property
    @abstractmethod
    def is_playing(self) -> bool:
        pass

    def set_volume(self, level: int) -> None:
        """Set volume (0-100). Optional for engines without volume control."""

    def close(self) -> None:
        """Release engine resources."""
