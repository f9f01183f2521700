"""
Disk cache for downloaded audio.
Implements an LRU (Least Recently Used) eviction policy over a SQLite index,
with de-duplicated background downloads and retry/backoff.
"""

import concurrent.futures
import logging
import os
import re
import shutil
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Sequence, Set

import requests

from shared.constants import (
    CACHE_INDEX_FILENAME,
    CACHE_MEDIA_DIRNAME,
    DEFAULT_CACHE_SIZE_GB,
    DEFAULT_DOWNLOAD_CHUNK_SIZE,
    DEFAULT_NETWORK_TIMEOUT,
    DOWNLOAD_ATTEMPTS,
    DOWNLOAD_BACKOFF_SECONDS,
)
from shared.errors import DownloadFailed, NetworkUnavailable, PlaybackError
from shared.models import CacheEntry, Track
from shared.sync_api import build_session

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_.-]')

AUDIO_EXTENSIONS = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/aac": ".aac",
    "audio/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/webm": ".webm",
    "audio/flac": ".flac",
    "audio/wav": ".wav",
}
DEFAULT_AUDIO_EXTENSION = ".mp3"


def _safe_name(track_id: str) -> str:
    return _UNSAFE_CHARS.sub('_', track_id) or '_'


class AudioCacheManager:
    """
    Manages the local audio cache.

    The in-memory set of cached ids is only a hint. Every read re-checks the
    index row and the file on disk, and drops the entry when either is gone.
    """

    def __init__(self, cache_dir: str,
                 stream_url: Callable[[str], str],
                 session: Optional[requests.Session] = None,
                 connectivity=None,
                 executor: Optional[concurrent.futures.Executor] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 max_size_bytes: int = int(DEFAULT_CACHE_SIZE_GB * 1024 * 1024 * 1024),
                 attempts: int = DOWNLOAD_ATTEMPTS,
                 backoff: Sequence[float] = DOWNLOAD_BACKOFF_SECONDS,
                 timeout: float = DEFAULT_NETWORK_TIMEOUT,
                 chunk_size: int = DEFAULT_DOWNLOAD_CHUNK_SIZE):
        self.root = Path(cache_dir).expanduser()
        self.media_dir = self.root / CACHE_MEDIA_DIRNAME
        self.db_path = self.root / CACHE_INDEX_FILENAME
        self.max_size_bytes = max_size_bytes

        self._stream_url = stream_url
        self._session = session or build_session()
        self._connectivity = connectivity
        self._sleep = sleep
        self._attempts = max(1, attempts)
        self._backoff = tuple(backoff) or (0,)
        self._timeout = timeout
        self._chunk_size = chunk_size

        self._owns_executor = executor is None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="CacheDownload"
        )

        self.lock = threading.Lock()
        self._pending: Dict[str, concurrent.futures.Future] = {}
        self._hints: Set[str] = set()

        self._init_cache()
        self._init_db()
        self._load_hints()

    def _init_cache(self):
        """Ensure cache directory exists."""
        self.media_dir.mkdir(parents=True, exist_ok=True)

    def _init_db(self):
        """Initialize SQLite database for cache tracking."""
        with self.lock:
            self.conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=20
            )
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    track_id TEXT PRIMARY KEY,
                    file_path TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    url TEXT NOT NULL,
                    last_accessed REAL NOT NULL,
                    access_count INTEGER DEFAULT 1
                )
            """)
            self.conn.commit()

    def _load_hints(self):
        """Seed the hint set from index rows whose files are still on disk."""
        with self.lock:
            rows = self.conn.execute(
                "SELECT track_id, file_path, file_size, url FROM cache_entries"
            ).fetchall()
            stale = []
            for track_id, file_path, size, url in rows:
                if CacheEntry(track_id, Path(file_path), size, url).exists():
                    self._hints.add(track_id)
                else:
                    stale.append(track_id)
            for track_id in stale:
                self.conn.execute("DELETE FROM cache_entries WHERE track_id = ?", (track_id,))
            self.conn.commit()
        if stale:
            logger.info("Dropped %d stale cache entries", len(stale))
        logger.debug("Cache index loaded: %d entries", len(self._hints))

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        with self.lock:
            self.conn.close()

    # Lookups

    def _entry(self, track_id: str) -> Optional[CacheEntry]:
        with self.lock:
            row = self.conn.execute(
                "SELECT file_path, file_size, url FROM cache_entries WHERE track_id = ?",
                (track_id,)
            ).fetchone()
        if row is None:
            return None
        return CacheEntry(track_id=track_id, path=Path(row[0]), size=row[1], url=row[2])

    def _forget(self, track_id: str, path: Optional[Path] = None) -> None:
        with self.lock:
            self._hints.discard(track_id)
            try:
                self.conn.execute("DELETE FROM cache_entries WHERE track_id = ?", (track_id,))
                self.conn.commit()
            except sqlite3.Error as e:
                logger.warning("Could not drop cache row for %s: %s", track_id, e)
        if path is not None:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not delete %s: %s", path, e)

    def is_cached(self, track_id: str) -> bool:
        """True only when the hint, the index row and a non-empty file all agree."""
        with self.lock:
            if track_id not in self._hints:
                return False
        entry = None
        try:
            entry = self._entry(track_id)
            if entry is not None and entry.exists():
                return True
        except (sqlite3.Error, OSError) as e:
            logger.debug("Cache check for %s failed: %s", track_id, e)
        logger.info("Cached file for %s is gone, dropping entry", track_id)
        self._forget(track_id, entry.path if entry else None)
        return False

    def cache_file(self, track_id: str) -> Optional[Path]:
        """Path to the cached file, or None. Updates access time."""
        if not self.is_cached(track_id):
            return None
        entry = self._entry(track_id)
        if entry is None:
            return None
        with self.lock:
            try:
                self.conn.execute("""
                    UPDATE cache_entries
                    SET last_accessed = ?, access_count = access_count + 1
                    WHERE track_id = ?
                """, (time.time(), track_id))
                self.conn.commit()
            except sqlite3.OperationalError as e:
                logger.debug("Could not update access stats for %s: %s", track_id, e)
        return entry.path

    # Downloads

    def _is_online(self) -> bool:
        if self._connectivity is None:
            return True
        return self._connectivity.is_online()

    def download_and_cache(self, track: Track) -> concurrent.futures.Future:
        """
        Download track into the cache.

        Concurrent calls for the same id share one pending future and one
        transfer. Resolves to the cached Path, or fails with
        NetworkUnavailable or DownloadFailed.
        """
        path = self.cache_file(track.id)
        if path is not None:
            done = concurrent.futures.Future()
            done.set_result(path)
            return done

        with self.lock:
            pending = self._pending.get(track.id)
            if pending is not None:
                logger.debug("Download of %s already in flight", track.id)
                return pending
            future = concurrent.futures.Future()
            self._pending[track.id] = future

        try:
            self._executor.submit(self._run_download, track, future)
        except RuntimeError as e:
            with self.lock:
                self._pending.pop(track.id, None)
            future.set_exception(DownloadFailed(f"Download pool unavailable: {e}", track.id))
        return future

    def _run_download(self, track: Track, future: concurrent.futures.Future) -> None:
        try:
            path = self._download(track)
        except Exception as e:
            with self.lock:
                self._pending.pop(track.id, None)
            future.set_exception(e)
        else:
            with self.lock:
                self._pending.pop(track.id, None)
            future.set_result(path)

    def _download(self, track: Track) -> Path:
        if not self._is_online():
            raise NetworkUnavailable("No network connection", track.id)

        url = self._stream_url(track.id)
        last_error: Optional[BaseException] = None
        for attempt in range(self._attempts):
            if attempt:
                delay = self._backoff[min(attempt - 1, len(self._backoff) - 1)]
                logger.info("Retrying download of %s in %ss (attempt %d/%d)",
                            track.id, delay, attempt + 1, self._attempts)
                self._sleep(delay)
                if not self._is_online():
                    raise NetworkUnavailable("Network lost during download", track.id)
            try:
                return self._fetch(track.id, url)
            except (requests.RequestException, OSError) as e:
                last_error = e
                logger.warning("Download of %s failed (attempt %d/%d): %s",
                               track.id, attempt + 1, self._attempts, e)

        raise DownloadFailed(f"Download failed after {self._attempts} attempts: {last_error}",
                             track.id, attempts=self._attempts)

    def _fetch(self, track_id: str, url: str) -> Path:
        part_path = self.media_dir / f"{_safe_name(track_id)}.part"
        response = self._session.get(url, stream=True, timeout=self._timeout)
        try:
            response.raise_for_status()
            content_type = (response.headers.get('Content-Type') or '').split(';')[0].strip()
            suffix = AUDIO_EXTENSIONS.get(content_type.lower(), DEFAULT_AUDIO_EXTENSION)
            with open(part_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=self._chunk_size):
                    if chunk:
                        f.write(chunk)
        except BaseException:
            part_path.unlink(missing_ok=True)
            raise
        finally:
            response.close()

        size = part_path.stat().st_size
        if size == 0:
            part_path.unlink(missing_ok=True)
            raise OSError(f"Empty response body for {track_id}")

        self._ensure_space(size)
        target = self.media_dir / f"{_safe_name(track_id)}{suffix}"
        os.replace(part_path, target)

        with self.lock:
            self.conn.execute("""
                INSERT OR REPLACE INTO cache_entries
                (track_id, file_path, file_size, url, last_accessed, access_count)
                VALUES (?, ?, ?, ?, ?, 1)
            """, (track_id, str(target), size, url, time.time()))
            self.conn.commit()
            self._hints.add(track_id)
        logger.info("Cached %s (%d bytes)", track_id, size)
        return target

    def preload_batch(self, tracks: Iterable[Track], limit: int) -> int:
        """
        Sequentially download up to limit uncached tracks.

        Stops the whole batch as soon as the network is gone; the caller's
        own schedule is expected to try again later. Returns the number of
        tracks cached by this call.
        """
        attempted = 0
        cached = 0
        for track in tracks:
            if attempted >= limit:
                break
            if self.is_cached(track.id):
                continue
            if not self._is_online():
                logger.info("Offline, aborting preload batch")
                break
            attempted += 1
            try:
                self.download_and_cache(track).result()
                cached += 1
            except NetworkUnavailable:
                logger.info("Network lost, aborting preload batch")
                break
            except PlaybackError as e:
                logger.warning("Preload of %s failed: %s", track.id, e)
        return cached

    # Accounting and eviction

    def prune_to_size(self, target_bytes: int):
        """Prune cache to a specific size (LRU)."""
        removed = []
        with self.lock:
            result = self.conn.execute("SELECT SUM(file_size) FROM cache_entries").fetchone()[0]
            current_size = result if result else 0
            if current_size <= target_bytes:
                return

            # Get candidates (oldest first)
            rows = self.conn.execute(
                "SELECT track_id, file_path, file_size FROM cache_entries ORDER BY last_accessed ASC"
            ).fetchall()
            for track_id, file_path, size in rows:
                self.conn.execute("DELETE FROM cache_entries WHERE track_id = ?", (track_id,))
                self._hints.discard(track_id)
                removed.append(Path(file_path))
                current_size -= size
                if current_size <= target_bytes:
                    break
            self.conn.commit()

        for path in removed:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not delete %s: %s", path, e)
        logger.info("Cache: pruned %d files to reach target size", len(removed))

    def _ensure_space(self, new_bytes: int):
        """Free up space if needed using LRU policy."""
        self.prune_to_size(self.max_size_bytes - new_bytes)

    def total_size(self) -> int:
        """
        Bytes used by cached audio files.

        Only the media directory is counted; the SQLite index and its WAL
        are bookkeeping and stay out of the size budget that pruning enforces.
        """
        total = 0
        for dirpath, _dirnames, filenames in os.walk(self.media_dir):
            for name in filenames:
                try:
                    total += os.path.getsize(os.path.join(dirpath, name))
                except OSError:
                    continue
        return total

    def evict_all(self):
        """Delete all cached files and reset the index."""
        try:
            shutil.rmtree(self.media_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not fully clear %s: %s", self.media_dir, e)
        self._init_cache()

        with self.lock:
            self.conn.execute("DELETE FROM cache_entries")
            self.conn.commit()
            self._hints.clear()
        logger.info("Cache cleared")

    def remove(self, track_id: str):
        """Remove a specific track from the cache (file and index row)."""
        entry = self._entry(track_id)
        self._forget(track_id, entry.path if entry else None)

    def cached_ids(self) -> Set[str]:
        with self.lock:
            return set(self._hints)
