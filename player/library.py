"""
Library management for the player.
Drives playlist sync jobs to completion and turns stored playlists into
track lists for the playback queue.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from shared.constants import SYNC_POLL_INTERVAL, SYNC_POLL_MAX_ATTEMPTS, SYNC_POLL_MAX_ERRORS
from shared.errors import PlaybackError
from shared.models import Playlist, SyncJob, Track
from shared.storage import LibraryStore
from shared.sync_api import SyncApiClient, extract_playlist_id

logger = logging.getLogger(__name__)


class LibraryManager:
    """Manages synced playlists and their tracks."""

    def __init__(self, api: SyncApiClient, store: LibraryStore,
                 sleep: Callable[[float], None] = time.sleep,
                 poll_interval: float = SYNC_POLL_INTERVAL,
                 max_poll_attempts: int = SYNC_POLL_MAX_ATTEMPTS,
                 max_poll_errors: int = SYNC_POLL_MAX_ERRORS):
        self.api = api
        self.store = store
        self._sleep = sleep
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.max_poll_errors = max_poll_errors

    def add_playlist(self, source_url: str) -> Tuple[Playlist, SyncJob]:
        """
        Start syncing a playlist and store a placeholder for it.

        The placeholder carries the name reported by the sync job; its track
        list is filled in by refresh_playlist once the job completes.
        Raises ValueError for unusable URLs or playlists already in the
        library.
        """
        playlist_id = extract_playlist_id(source_url)
        if not playlist_id:
            raise ValueError(f"Invalid playlist URL: {source_url}")
        if self.store.get_playlist(playlist_id) is not None:
            raise ValueError(f"Playlist already exists: {playlist_id}")

        job = self.api.start_sync(source_url)
        playlist = Playlist(
            id=playlist_id,
            name=job.playlist_name or playlist_id,
            source_url=source_url,
            sync_job_id=job.id,
        )
        self.store.add_playlist(playlist)
        self.store.save_sync_job(job)
        logger.info("Added playlist %s (%s), sync job %s", playlist.name, playlist_id, job.id)
        return playlist, job

    def poll_sync(self, job_id: str, playlist_id: str,
                  on_progress: Optional[Callable[[SyncJob], None]] = None) -> Optional[SyncJob]:
        """
        Poll a sync job until it completes, fails or polling gives up.

        Every status is saved to the job history. On completion the playlist
        is refreshed and track errors are applied. Returns the last job seen.
        """
        attempts = 0
        errors = 0
        last_job: Optional[SyncJob] = None

        while attempts < self.max_poll_attempts:
            self._sleep(self.poll_interval)
            attempts += 1
            try:
                job = self.api.poll_sync_status(job_id)
            except PlaybackError as e:
                errors += 1
                logger.warning("Error polling sync status of %s: %s", job_id, e)
                if errors > self.max_poll_errors:
                    logger.error("Too many polling errors, giving up on job %s", job_id)
                    break
                continue

            self.store.save_sync_job(job)
            last_job = job
            logger.debug("Sync status: %s, progress: %.0f%%", job.status, job.progress * 100)
            if on_progress is not None:
                on_progress(job)

            if job.is_complete:
                self.refresh_playlist(playlist_id)
                self.apply_track_errors(playlist_id)
                break
            if job.is_error:
                logger.error("Sync job %s failed: %s", job_id, job.error or "Unknown error")
                break
        else:
            logger.warning("Sync job %s still running after %d polls", job_id, attempts)

        return last_job

    def refresh_playlist(self, playlist_id: str) -> List[Track]:
        """Fetch the authoritative track list and merge it into the store."""
        tracks = self.api.fetch_tracks(playlist_id)
        merged = self.store.add_tracks(tracks)

        playlist = self.store.get_playlist(playlist_id)
        if playlist is None:
            playlist = Playlist(id=playlist_id, name=playlist_id, source_url="")
        playlist.track_ids = [t.id for t in tracks]
        self.store.add_playlist(playlist)
        logger.info("Playlist %s refreshed: %d tracks", playlist_id, len(tracks))
        return [merged[t.id] for t in tracks]

    def apply_track_errors(self, playlist_id: str) -> int:
        """
        Record per-track sync errors for a playlist on the track records.

        Tracks of the playlist that are no longer reported as failing get
        their error cleared. Returns the reported error count.
        """
        report = self.api.fetch_track_errors(playlist_id)
        failed: Dict[str, str] = {
            str(entry.get("id")): entry.get("errorMessage") or "Unknown error"
            for entry in report.get("tracks", [])
        }
        self.store.save_track_errors(playlist_id, report.get("tracks", []))

        playlist = self.store.get_playlist(playlist_id)
        track_ids = set(playlist.track_ids) if playlist else set()
        track_ids.update(failed)
        stored = self.store.load_tracks()
        for track_id in track_ids:
            track = stored.get(track_id)
            if track is None:
                continue
            if track_id in failed:
                if track.error_message != failed[track_id] or not track.has_error:
                    self.store.update_track(track.with_error(failed[track_id]))
            elif track.has_error:
                self.store.update_track(track.without_error())

        count = int(report.get("errorCount", len(failed)))
        if count:
            logger.warning("Playlist %s synced with %d track errors", playlist_id, count)
        return count

    def playlist_tracks(self, playlist_id: str) -> List[Track]:
        """All stored tracks of a playlist, in playlist order."""
        playlist = self.store.get_playlist(playlist_id)
        if playlist is None:
            return []
        stored = self.store.load_tracks()
        return [stored[i] for i in playlist.track_ids if i in stored]

    def playable_tracks(self, playlist_id: str) -> List[Track]:
        """
        Tracks to hand to the queue: failed tracks are left out.

        Ignored tracks stay in the list; the queue keeps them for display and
        excludes them from playback itself.
        """
        return [t for t in self.playlist_tracks(playlist_id) if not t.has_error]

    def set_ignored(self, track_id: str, ignored: bool) -> Track:
        track = self.store.set_track_ignored(track_id, ignored)
        logger.info("Track %s %s", track_id, "ignored" if ignored else "restored")
        return track

    def resync_track(self, track_id: str) -> Dict[str, object]:
        """Ask the server to fetch a failed track again; clears its error on success."""
        result = self.api.resync_track(track_id)
        if result.get("success"):
            track = self.store.get_track(track_id)
            if track is not None and track.has_error:
                self.store.update_track(track.without_error())
        else:
            logger.warning("Resync of %s failed: %s", track_id, result.get("message"))
        return result
