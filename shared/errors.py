"""
Error taxonomy for the playback core and its collaborators.

Every error here is non-fatal to the orchestrator: automatic paths retry,
skip forward or leave the player idle, and only explicit user intents see
them surface through their futures.
"""

from typing import Optional


class PlaybackError(Exception):
    """Base class for all player errors."""

    def __init__(self, message: str, track_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.track_id = track_id

    def __str__(self) -> str:
        if self.track_id:
            return f"{self.message} (track {self.track_id})"
        return self.message


class NetworkUnavailable(PlaybackError):
    """No route to the network or the API host."""


class DownloadFailed(PlaybackError):
    """A track download exhausted its attempts."""

    def __init__(self, message: str, track_id: Optional[str] = None,
                 attempts: int = 0):
        super().__init__(message, track_id)
        self.attempts = attempts


class EngineSetupTimeout(PlaybackError):
    """The audio engine did not finish loading a source in time."""


class TrackNotFound(PlaybackError):
    """The requested track is not in the active ordering."""


class QueueEmpty(PlaybackError):
    """There is nothing playable in the queue."""


class SyncApiError(PlaybackError):
    """The sync API answered with an error or an unreadable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
