"""
Playback queue for the player.
Keeps linear and shuffled orderings of the active playlist and a cursor
into whichever ordering the current mode uses.
"""

import logging
import random
import threading
from typing import Callable, List, Optional

from shared.models import Direction, PlaybackMode, Track

logger = logging.getLogger(__name__)


def fisher_yates(items: List[Track], rng: random.Random) -> List[Track]:
    """Return an unbiased random permutation of items."""
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


class PlaybackQueue:
    """
    In-memory playback queue.

    Linear mode walks the source order, shuffle and loop walk the shuffled
    order. Loop itself never moves the cursor: the orchestrator replays the
    current track instead of advancing.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._display: List[Track] = []
        self._linear: List[Track] = []
        self._shuffled: List[Track] = []
        self._index = -1
        self._mode = PlaybackMode.LINEAR
        self._lock = threading.Lock()
        self._on_change_callbacks: List[Callable[[], None]] = []

    def _ordering_for(self, mode: PlaybackMode) -> List[Track]:
        return self._linear if mode == PlaybackMode.LINEAR else self._shuffled

    @property
    def active_ordering(self) -> List[Track]:
        with self._lock:
            return list(self._ordering_for(self._mode))

    @property
    def linear_ordering(self) -> List[Track]:
        with self._lock:
            return list(self._linear)

    @property
    def shuffled_ordering(self) -> List[Track]:
        with self._lock:
            return list(self._shuffled)

    @property
    def display_tracks(self) -> List[Track]:
        """Everything passed to set_source, ignored tracks included."""
        with self._lock:
            return list(self._display)

    @property
    def mode(self) -> PlaybackMode:
        return self._mode

    @property
    def index(self) -> int:
        return self._index

    @property
    def current_track(self) -> Optional[Track]:
        with self._lock:
            ordering = self._ordering_for(self._mode)
            if 0 <= self._index < len(ordering):
                return ordering[self._index]
            return None

    def is_empty(self) -> bool:
        with self._lock:
            return not self._linear

    def size(self) -> int:
        with self._lock:
            return len(self._linear)

    def set_source(self, tracks: List[Track], start_track_id: Optional[str] = None) -> None:
        """
        Replace the source list.

        Ignored tracks are dropped. Both orderings are rebuilt on every call;
        the cursor lands on start_track_id when it is playable, else on 0.
        """
        with self._lock:
            self._display = list(tracks)
            playable = [t for t in tracks if not t.is_ignored]
            self._linear = list(playable)
            self._shuffled = fisher_yates(playable, self._rng)

            ordering = self._ordering_for(self._mode)
            if not ordering:
                self._index = -1
                if tracks:
                    logger.info("All %d tracks are ignored, nothing to play", len(tracks))
            else:
                index = 0
                if start_track_id is not None:
                    index = self._position_of(ordering, start_track_id)
                    if index < 0:
                        index = 0
                self._index = max(0, min(index, len(ordering) - 1))
            logger.debug("Queue source set: %d playable of %d", len(playable), len(tracks))
        self._notify_change()

    def advance(self, direction: Direction) -> Optional[Track]:
        """Move the cursor one step (wrapping at both ends) and return the new track."""
        with self._lock:
            ordering = self._ordering_for(self._mode)
            if not ordering:
                return None
            start = self._index if self._index >= 0 else 0
            self._index = (start + direction.value) % len(ordering)
            track = ordering[self._index]
        self._notify_change()
        return track

    def toggle_mode(self) -> PlaybackMode:
        """Cycle linear -> shuffle -> loop -> linear, keeping the current track."""
        return self.set_mode(self._mode.next())

    def set_mode(self, mode: PlaybackMode) -> PlaybackMode:
        with self._lock:
            old_ordering = self._ordering_for(self._mode)
            current = None
            if 0 <= self._index < len(old_ordering):
                current = old_ordering[self._index]

            self._mode = mode
            if current is not None and mode != PlaybackMode.LOOP:
                new_index = self._position_of(self._ordering_for(mode), current.id)
                if new_index != -1:
                    self._index = new_index
        logger.debug("Playback mode set to %s", mode.value)
        self._notify_change()
        return mode

    def locate(self, track_id: str) -> bool:
        """Point the cursor at track_id in the active ordering. False if absent."""
        with self._lock:
            index = self._position_of(self._ordering_for(self._mode), track_id)
            if index == -1:
                return False
            self._index = index
        self._notify_change()
        return True

    def contains(self, track_id: str) -> bool:
        with self._lock:
            return self._position_of(self._linear, track_id) != -1

    def upcoming(self, count: int) -> List[Track]:
        """
        The next count tracks after the cursor, wrapping, without repeats.

        Empty in loop mode, where the current track is the only one played.
        """
        with self._lock:
            if self._mode == PlaybackMode.LOOP:
                return []
            ordering = self._ordering_for(self._mode)
            if not ordering or count <= 0:
                return []
            start = self._index if self._index >= 0 else 0
            result = []
            for step in range(1, min(count, len(ordering) - 1) + 1):
                result.append(ordering[(start + step) % len(ordering)])
            return result

    @staticmethod
    def _position_of(ordering: List[Track], track_id: str) -> int:
        for i, track in enumerate(ordering):
            if track.id == track_id:
                return i
        return -1

    def add_change_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback to be called when the queue changes."""
        if callback not in self._on_change_callbacks:
            self._on_change_callbacks.append(callback)

    def remove_change_callback(self, callback: Callable[[], None]) -> None:
        """Unregister a queue change callback."""
        if callback in self._on_change_callbacks:
            self._on_change_callbacks.remove(callback)

    def _notify_change(self) -> None:
        for callback in list(self._on_change_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Error in queue change callback")
