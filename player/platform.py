"""
Platform wake lock.

A single toggle shared across playback transitions. acquire() while held
and release() while not held are no-ops.
"""

import logging
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Optional

from shared.constants import APP_NAME

logger = logging.getLogger(__name__)


class WakeLock(ABC):
    """Idempotent wake lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> bool:
        """Take the lock. Returns False when it was already held."""
        with self._lock:
            if self._held:
                return False
            self._do_acquire()
            self._held = True
        logger.debug("Wake lock acquired")
        return True

    def release(self) -> bool:
        """Drop the lock. Returns False when it was not held."""
        with self._lock:
            if not self._held:
                return False
            self._do_release()
            self._held = False
        logger.debug("Wake lock released")
        return True

    @abstractmethod
    def _do_acquire(self) -> None:
        pass

    @abstractmethod
    def _do_release(self) -> None:
        pass


class NullWakeLock(WakeLock):
    """Tracks held state only, for platforms without an inhibitor."""

    def _do_acquire(self) -> None:
        pass

    def _do_release(self) -> None:
        pass


class SystemdInhibitWakeLock(WakeLock):
    """Holds a `systemd-inhibit` process for as long as the lock is held."""

    def __init__(self, why: str = "Playing audio"):
        super().__init__()
        self._why = why
        self._process: Optional[subprocess.Popen] = None

    @staticmethod
    def available() -> bool:
        return shutil.which("systemd-inhibit") is not None

    def _do_acquire(self) -> None:
        self._process = subprocess.Popen(
            ["systemd-inhibit", "--what=sleep:idle", f"--who={APP_NAME}",
             f"--why={self._why}", "--mode=block", "sleep", "infinity"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

    def _do_release(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        process.terminate()
        try:
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            process.kill()


def default_wake_lock() -> WakeLock:
    if SystemdInhibitWakeLock.available():
        return SystemdInhibitWakeLock()
    return NullWakeLock()
