"""
Key/value persistence for the library layer.

A single JSON document on disk holds the track collection, playlists,
sync-job history and per-playlist track errors. The playback core never
touches this store; only the library layer does.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from shared.constants import DEFAULT_CONFIG_DIR, LIBRARY_STORE_FILENAME, SYNC_JOB_HISTORY_LIMIT
from shared.models import Playlist, SyncJob, Track

logger = logging.getLogger(__name__)

TRACKS_KEY = "tracks"
PLAYLISTS_KEY = "playlists"
SYNC_JOBS_KEY = "sync_jobs"
LATEST_JOBS_KEY = "latest_sync_jobs"
TRACK_ERRORS_KEY = "track_errors"
# Older stores kept a separate ignored-id list next to the per-track flag.
LEGACY_IGNORED_KEY = "ignored_tracks"


class LibraryStore:
    """
    JSON-backed store for tracks, playlists and sync jobs.

    The is_ignored flag on each track record is the only source of truth for
    exclusion; ignored_ids() is derived from it on demand.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else Path(DEFAULT_CONFIG_DIR).expanduser() / LIBRARY_STORE_FILENAME
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        self._data = {}
        if not self._path.exists():
            return
        try:
            content = self._path.read_text(encoding="utf-8").strip()
            if content:
                self._data = json.loads(content)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not load library store %s, starting fresh: %s", self._path, e)
            self._data = {}
            return

        if LEGACY_IGNORED_KEY in self._data:
            self._migrate_ignored_list()

    def _migrate_ignored_list(self) -> None:
        """Fold a legacy ignored-id list into the track flags, then drop it."""
        legacy = self._data.pop(LEGACY_IGNORED_KEY, None) or []
        tracks = self._data.setdefault(TRACKS_KEY, {})
        folded = 0
        for track_id in legacy:
            record = tracks.get(track_id)
            if record is not None and not record.get("is_ignored"):
                record["is_ignored"] = True
                folded += 1
        logger.info("Migrated legacy ignored list (%d ids, %d flags set)", len(legacy), folded)
        self._save()

    def _save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(self._data, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as e:
            logger.error("Error saving library store %s: %s", self._path, e)

    # Generic key/value access

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._save()

    # Tracks

    def load_tracks(self) -> Dict[str, Track]:
        with self._lock:
            records = self._data.get(TRACKS_KEY, {})
            tracks = {}
            for track_id, record in records.items():
                try:
                    tracks[track_id] = Track.from_dict(record)
                except (KeyError, TypeError) as e:
                    logger.warning("Dropping unreadable track record %s: %s", track_id, e)
            return tracks

    def save_tracks(self, tracks: Dict[str, Track]) -> None:
        with self._lock:
            self._data[TRACKS_KEY] = {track_id: t.to_dict() for track_id, t in tracks.items()}
            self._save()

    def get_track(self, track_id: str) -> Optional[Track]:
        return self.load_tracks().get(track_id)

    def add_tracks(self, tracks: List[Track]) -> Dict[str, Track]:
        """
        Merge fresh tracks into the collection.

        Known tracks keep their ignored flag and any recorded error; new ones
        are stored as given.
        """
        with self._lock:
            existing = self.load_tracks()
            for track in tracks:
                old = existing.get(track.id)
                if old is None:
                    existing[track.id] = track
                    continue
                merged = track.with_ignored(old.is_ignored)
                if old.has_error:
                    merged = merged.with_error(old.error_message or "Unknown error")
                existing[track.id] = merged
            self.save_tracks(existing)
            return existing

    def update_track(self, track: Track) -> Track:
        """Substitute a new value for a track, preserving its ignored flag."""
        with self._lock:
            existing = self.load_tracks()
            old = existing.get(track.id)
            if old is not None:
                track = track.with_ignored(old.is_ignored)
            existing[track.id] = track
            self.save_tracks(existing)
            return track

    def set_track_ignored(self, track_id: str, ignored: bool) -> Track:
        with self._lock:
            existing = self.load_tracks()
            if track_id not in existing:
                raise KeyError(f"Track not found: {track_id}")
            updated = existing[track_id].with_ignored(ignored)
            existing[track_id] = updated
            self.save_tracks(existing)
            return updated

    def ignored_ids(self) -> List[str]:
        """Derived index of ignored track ids, sorted."""
        return sorted(t.id for t in self.load_tracks().values() if t.is_ignored)

    # Playlists

    def load_playlists(self) -> List[Playlist]:
        with self._lock:
            playlists = []
            for record in self._data.get(PLAYLISTS_KEY, []):
                try:
                    playlists.append(Playlist.from_dict(record))
                except TypeError as e:
                    logger.warning("Dropping unreadable playlist record: %s", e)
            return playlists

    def save_playlists(self, playlists: List[Playlist]) -> None:
        with self._lock:
            self._data[PLAYLISTS_KEY] = [p.to_dict() for p in playlists]
            self._save()

    def get_playlist(self, playlist_id: str) -> Optional[Playlist]:
        for playlist in self.load_playlists():
            if playlist.id == playlist_id:
                return playlist
        return None

    def add_playlist(self, playlist: Playlist) -> None:
        """Insert or replace a playlist by id."""
        with self._lock:
            playlists = [p for p in self.load_playlists() if p.id != playlist.id]
            playlists.append(playlist)
            self.save_playlists(playlists)

    def remove_playlist(self, playlist_id: str) -> None:
        with self._lock:
            self.save_playlists([p for p in self.load_playlists() if p.id != playlist_id])

    # Sync jobs

    def save_sync_job(self, job: SyncJob) -> None:
        """Record a job in the history (last N kept) and as its playlist's latest."""
        with self._lock:
            jobs = list(self._data.get(SYNC_JOBS_KEY, []))
            for i, record in enumerate(jobs):
                if record.get("jobId") == job.id:
                    jobs[i] = job.to_dict()
                    break
            else:
                jobs.append(job.to_dict())
            self._data[SYNC_JOBS_KEY] = jobs[-SYNC_JOB_HISTORY_LIMIT:]
            self._data.setdefault(LATEST_JOBS_KEY, {})[job.playlist_id] = job.to_dict()
            self._save()

    def all_sync_jobs(self) -> List[SyncJob]:
        with self._lock:
            return [SyncJob.from_dict(j) for j in self._data.get(SYNC_JOBS_KEY, [])]

    def latest_sync_job(self, playlist_id: str) -> Optional[SyncJob]:
        with self._lock:
            record = self._data.get(LATEST_JOBS_KEY, {}).get(playlist_id)
            return SyncJob.from_dict(record) if record else None

    # Track errors

    def save_track_errors(self, playlist_id: str, errors: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._data.setdefault(TRACK_ERRORS_KEY, {})[playlist_id] = list(errors)
            self._save()

    def load_track_errors(self, playlist_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._data.get(TRACK_ERRORS_KEY, {}).get(playlist_id, []))
