"""
HTTP client for the playlist-sync API.

The server owns playlist sync: it resolves a source playlist, fetches the
audio, and exposes the result as track lists plus a per-track stream URL.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from shared.constants import (
    DEFAULT_NETWORK_TIMEOUT,
    DEFAULT_PROBE_TIMEOUT,
    HTTP_ADAPTER_RETRIES,
    PLAYLIST_PATH,
    RESYNC_PATH,
    STREAM_PATH,
    SYNC_PLAYLIST_PATH,
    SYNC_STATUS_PATH,
)
from shared.errors import NetworkUnavailable, SyncApiError
from shared.models import SyncJob, Track

logger = logging.getLogger(__name__)


def build_session(retries: int = HTTP_ADAPTER_RETRIES) -> requests.Session:
    """Session with pooled, retrying connections for both schemes."""
    session = requests.Session()
    adapter = requests.adapters.HTTPAdapter(pool_connections=10, pool_maxsize=10,
                                            max_retries=retries)
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    session.headers.update({'Connection': 'keep-alive'})
    return session


def extract_playlist_id(source_url: str) -> str:
    """
    Extract a playlist id from a share URL.

    https://open.spotify.com/playlist/37i9dQZF1DX0XUsuxWHRQd -> 37i9dQZF1DX0XUsuxWHRQd
    Falls back to the last path segment.
    """
    if not source_url:
        return ""
    segments = [s for s in urlparse(source_url.strip()).path.split("/") if s]
    if len(segments) >= 2 and segments[0] == "playlist":
        return segments[1]
    return segments[-1] if segments else ""


class SyncApiClient:
    """Thin wrapper around the sync API endpoints."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_NETWORK_TIMEOUT,
                 probe_timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or build_session()
        self.timeout = timeout
        self.probe_timeout = probe_timeout

    def stream_url(self, track_id: str) -> str:
        """Stable per-track URL shared by the cache and the streaming fallback."""
        return f"{self.base_url}/{STREAM_PATH}/{track_id}"

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url] + [p.strip("/") for p in parts])

    def _request(self, method: str, url: str, **kwargs) -> Any:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkUnavailable(f"Cannot reach sync API: {e}") from e
        except requests.RequestException as e:
            raise SyncApiError(f"Request to {url} failed: {e}") from e

        if response.status_code >= 400:
            raise SyncApiError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise SyncApiError(f"Invalid JSON from {url}") from e

    def fetch_tracks(self, playlist_id: str) -> List[Track]:
        """Fetch the authoritative track list of a synced playlist."""
        data = self._request("GET", self._url(PLAYLIST_PATH, playlist_id))
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise SyncApiError(f"Playlist {playlist_id}: response has no items list")

        tracks = []
        for item in items:
            try:
                tracks.append(Track.from_dict(item))
            except (KeyError, TypeError) as e:
                logger.warning("Skipping malformed track in playlist %s: %s", playlist_id, e)
        return tracks

    def start_sync(self, source_url: str) -> SyncJob:
        """Ask the server to sync a playlist. Returns immediately with the job."""
        data = self._request("POST", self._url(SYNC_PLAYLIST_PATH), json={"url": source_url})
        logger.info("Sync requested for %s", source_url)
        return self._parse_job(data)

    def poll_sync_status(self, job_id: str) -> SyncJob:
        data = self._request("GET", self._url(SYNC_STATUS_PATH, job_id))
        return self._parse_job(data)

    def fetch_track_errors(self, playlist_id: str) -> Dict[str, Any]:
        """
        Per-track sync errors for a playlist.

        Returns {"errorCount": int, "tracks": [{"id": ..., "errorMessage": ...}]}.
        """
        data = self._request("GET", self._url(PLAYLIST_PATH, playlist_id, "errors"))
        if not isinstance(data, dict):
            raise SyncApiError(f"Playlist {playlist_id}: invalid error report")

        raw = data.get("tracks", data.get("songs")) or []
        tracks = []
        for item in raw:
            if not isinstance(item, dict) or "id" not in item:
                continue
            message = item.get("errorMessage", item.get("error_message")) or "Unknown error"
            tracks.append({"id": str(item["id"]), "errorMessage": message})

        try:
            error_count = int(data.get("errorCount", len(tracks)))
        except (TypeError, ValueError):
            error_count = len(tracks)
        return {"errorCount": error_count, "tracks": tracks}

    def resync_track(self, track_id: str) -> Dict[str, Any]:
        data = self._request("POST", self._url(RESYNC_PATH, track_id))
        if not isinstance(data, dict):
            return {"success": False, "message": "Invalid response"}
        return {"success": bool(data.get("success")), "message": data.get("message")}

    def is_reachable(self) -> bool:
        """Lightweight reachability check against the API host."""
        try:
            self.session.head(self.base_url, timeout=self.probe_timeout, allow_redirects=True)
            return True
        except requests.RequestException as e:
            logger.debug("API host unreachable: %s", e)
            return False

    @staticmethod
    def _parse_job(data: Any) -> SyncJob:
        if not isinstance(data, dict) or "jobId" not in data:
            raise SyncApiError("Sync response has no jobId")
        return SyncJob.from_dict(data)
