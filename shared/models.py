"""
Data models for tracks, playlists, sync jobs and playback state.

This module defines the core data structures used throughout the player
for representing music tracks, playlist organization, synchronization jobs
and the ephemeral state published by the playback core.
"""

import dataclasses
from dataclasses import dataclass, asdict, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Dict, Optional, Any


class PlaybackMode(Enum):
    """Order in which the queue is traversed."""
    LINEAR = "linear"
    SHUFFLE = "shuffle"
    LOOP = "loop"

    def next(self) -> 'PlaybackMode':
        """Cycle linear -> shuffle -> loop -> linear."""
        order = [PlaybackMode.LINEAR, PlaybackMode.SHUFFLE, PlaybackMode.LOOP]
        return order[(order.index(self) + 1) % len(order)]


class ProcessingState(Enum):
    """Audio engine processing states, as published to subscribers."""
    IDLE = "idle"
    LOADING = "loading"
    BUFFERING = "buffering"
    READY = "ready"
    COMPLETED = "completed"


class Direction(Enum):
    NEXT = 1
    PREVIOUS = -1


@dataclass(frozen=True)
class Track:
    """
    Represents a single playable track.

    Tracks are immutable values. Status changes produce a new Track that
    supersedes the old one in the persisted collection.

    Attributes:
        id: Unique, stable identifier (also the stream URL key)
        title: Display title
        artist: Display artist
        image_url: Optional artwork reference
        error_message: Last sync/playback error reported for the track
        has_error: Whether the track is flagged as failing
        is_ignored: Whether the user excluded the track from playback
    """
    id: str
    title: str
    artist: str
    image_url: Optional[str] = None
    error_message: Optional[str] = None
    has_error: bool = False
    is_ignored: bool = False

    def with_error(self, message: str) -> 'Track':
        return replace(self, error_message=message, has_error=True)

    def without_error(self) -> 'Track':
        return replace(self, error_message=None, has_error=False)

    def with_ignored(self, ignored: bool) -> 'Track':
        return replace(self, is_ignored=ignored)

    def to_dict(self) -> Dict[str, Any]:
        """Convert track to the sync API / storage representation."""
        return {
            "id": self.id,
            "name": self.title,
            "artists": self.artist,
            "image": self.image_url,
            "error_message": self.error_message,
            "has_error": self.has_error,
            "is_ignored": self.is_ignored,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Track':
        """Create Track from an API or storage record, ignoring unknown keys."""
        artists = data.get("artists", data.get("artist", ""))
        if isinstance(artists, list):
            names = []
            for artist in artists:
                if isinstance(artist, dict):
                    names.append(str(artist.get("name", "")))
                else:
                    names.append(str(artist))
            artists = ", ".join(n for n in names if n)

        return cls(
            id=str(data["id"]),
            title=data.get("name", data.get("title", "")) or "",
            artist=artists or "",
            image_url=data.get("image", data.get("image_url")),
            error_message=data.get("error_message"),
            has_error=bool(data.get("has_error", False)),
            is_ignored=bool(data.get("is_ignored", False)),
        )


@dataclass
class Playlist:
    """A synced playlist and the ids of the tracks it contains, in order."""
    id: str
    name: str
    source_url: str
    image_url: Optional[str] = None
    track_ids: List[str] = field(default_factory=list)
    sync_job_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Playlist':
        field_names = {f.name for f in dataclasses.fields(cls)}
        filtered_data = {k: v for k, v in data.items() if k in field_names}
        filtered_data["track_ids"] = list(filtered_data.get("track_ids") or [])
        return cls(**filtered_data)


@dataclass
class SyncJob:
    """
    Server-side playlist sync job.

    status is one of 'queued', 'processing', 'completed', 'error'.
    progress runs from 0 to 1.
    """
    id: str
    playlist_id: str
    playlist_name: str
    status: str
    progress: float
    start_time: str
    end_time: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.status == "completed"

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    @property
    def is_processing(self) -> bool:
        return self.status == "processing"

    @property
    def is_queued(self) -> bool:
        return self.status == "queued"

    @property
    def is_finished(self) -> bool:
        return self.is_complete or self.is_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.id,
            "playlistId": self.playlist_id,
            "playlistName": self.playlist_name,
            "status": self.status,
            "progress": self.progress,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncJob':
        progress = data.get("progress")
        try:
            progress = float(progress)
        except (TypeError, ValueError):
            progress = 0.0

        return cls(
            id=str(data["jobId"]),
            playlist_id=data.get("playlistId") or "",
            playlist_name=data.get("playlistName") or "Unknown Playlist",
            status=data.get("status") or "unknown",
            progress=max(0.0, min(1.0, progress)),
            start_time=data.get("startTime") or datetime.now(timezone.utc).isoformat(),
            end_time=data.get("endTime"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class PlaybackState:
    """Snapshot published on every engine event. Never persisted."""
    is_playing: bool = False
    processing_state: ProcessingState = ProcessingState.IDLE
    position: float = 0.0
    buffering_fraction: float = 0.0


@dataclass
class CacheEntry:
    """A locally stored audio file for a track."""
    track_id: str
    path: Path
    size: int
    url: str

    def exists(self) -> bool:
        """Re-check the backing file: it must exist and be non-empty."""
        try:
            return self.path.is_file() and self.path.stat().st_size > 0
        except OSError:
            return False
