"""
Media-session bridge.

Maps system media commands (media keys, MPRIS-style remotes) onto
orchestrator intents and keeps now-playing metadata from bus events.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from player.events import EventBus, Subscription, Topic
from player.orchestrator import PlaybackOrchestrator
from shared.models import PlaybackMode, PlaybackState, Track

logger = logging.getLogger(__name__)

NO_TRACK_ID = "/org/mpris/MediaPlayer2/TrackList/NoTrack"


class MediaSessionBridge:
    """
    Media-session interface for the PlaybackOrchestrator.
    """
    def __init__(self, orchestrator: PlaybackOrchestrator, bus: EventBus):
        self.orchestrator = orchestrator
        self._track: Optional[Track] = orchestrator.current_track
        self._state: PlaybackState = orchestrator.state
        self._mode: PlaybackMode = orchestrator.mode
        self._on_change_callbacks: List[Callable[[], None]] = []

        self._subscriptions: List[Subscription] = [
            bus.subscribe(Topic.TRACK, self._on_track),
            bus.subscribe(Topic.STATE, self._on_state),
            bus.subscribe(Topic.MODE, self._on_mode),
        ]

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    def get_current_track_info(self) -> Dict[str, Any]:
        """Return generic track info for the session."""
        track = self._track
        if track is None:
            return {"mpris:trackid": NO_TRACK_ID}

        # trackid must be a unique path
        info = {
            "mpris:trackid": f"/org/mpris/MediaPlayer2/TrackList/{track.id}",
            "xesam:title": track.title,
            "xesam:artist": [track.artist] if track.artist else ["Unknown"],
        }
        if track.image_url:
            info["mpris:artUrl"] = track.image_url
        return info

    def can_control(self):
        return True

    def can_go_next(self):
        return not self.orchestrator.queue.is_empty()

    def can_go_previous(self):
        return not self.orchestrator.queue.is_empty()

    def can_pause(self):
        return self._track is not None

    def can_play(self):
        return self._track is not None or not self.orchestrator.queue.is_empty()

    def can_seek(self):
        return self._track is not None

    # --- Actions triggered by the system ---
    def play(self):
        """Handle play command from media keys."""
        if self._state.is_playing:
            return
        if self._track is not None:
            self.orchestrator.toggle_playback()
            return
        # No track loaded - start from the queue cursor
        first = self.orchestrator.queue.current_track
        if first is not None:
            self.orchestrator.play_track(first)

    def pause(self):
        """Handle pause command from media keys."""
        if self._state.is_playing:
            self.orchestrator.toggle_playback()

    def playpause(self):
        """Handle play/pause toggle from media keys."""
        if self._track is not None:
            self.orchestrator.toggle_playback()
        else:
            self.play()

    def stop(self):
        self.orchestrator.stop()

    def next(self):
        self.orchestrator.next()

    def previous(self):
        self.orchestrator.previous()

    def seek(self, offset):
        # Offset in microseconds, relative
        self.orchestrator.seek(self._state.position + offset / 1_000_000)

    def set_position(self, track_id, position):
        if self._track is None or track_id != self.get_current_track_info()["mpris:trackid"]:
            logger.debug("Ignoring set_position for stale track %s", track_id)
            return
        self.orchestrator.seek(position / 1_000_000)

    def get_playback_status(self):
        if self._state.is_playing:
            return "Playing"
        elif self._track is not None:
            return "Paused"
        else:
            return "Stopped"

    def get_loop_status(self):
        return "Track" if self._mode == PlaybackMode.LOOP else "None"

    def get_shuffle(self):
        return self._mode == PlaybackMode.SHUFFLE

    # --- Internal events to the system ---
    def _on_track(self, track: Optional[Track]) -> None:
        self._track = track
        self._notify_change()

    def _on_state(self, state: PlaybackState) -> None:
        previous = self._state
        self._state = state
        if previous.is_playing != state.is_playing:
            self._notify_change()

    def _on_mode(self, mode: PlaybackMode) -> None:
        self._mode = mode
        self._notify_change()

    def add_change_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback for properties changes (metadata, status, loop)."""
        if callback not in self._on_change_callbacks:
            self._on_change_callbacks.append(callback)

    def remove_change_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._on_change_callbacks:
            self._on_change_callbacks.remove(callback)

    def _notify_change(self) -> None:
        for callback in list(self._on_change_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Error in media session change callback")
