"""
Re-entrancy guard for skip operations.

At most one next/previous may be in flight. The first call wins and later
calls are dropped, not queued. A guard older than its timeout is treated as
stuck and cleared, so a lost completion can never block skipping for good.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SkipGuard:
    """Timestamped boolean lock with a stuck-flag timeout."""

    def __init__(self, clock: Callable[[], float], timeout: float):
        self._clock = clock
        self._timeout = timeout
        self._lock = threading.Lock()
        self._held = False
        self._started_at: Optional[float] = None
        self._token = 0

    @property
    def held(self) -> bool:
        with self._lock:
            return self._held

    @property
    def token(self) -> int:
        return self._token

    def try_acquire(self) -> Optional[int]:
        """Take the guard. Returns a token, or None when a skip is in flight."""
        with self._lock:
            now = self._clock()
            if self._held:
                age = now - (self._started_at or now)
                if age < self._timeout:
                    return None
                logger.warning("Skip guard stuck for %.1fs, clearing it", age)
            self._held = True
            self._started_at = now
            self._token += 1
            return self._token

    def release(self, token: Optional[int] = None) -> bool:
        """
        Clear the guard.

        With a token, only the acquisition that produced it is released, so a
        deferred release cannot clear a newer skip.
        """
        with self._lock:
            if not self._held:
                return False
            if token is not None and token != self._token:
                return False
            self._held = False
            self._started_at = None
            return True

    def release_if_stuck(self, token: int) -> None:
        """Timer target: clear the guard if this acquisition still holds it."""
        if self.release(token):
            logger.warning("Skip guard force-cleared after %.1fs", self._timeout)
