"""
Cancellable scheduled tasks and background execution.

The orchestrator owns every timer it starts through a Scheduler, so teardown
can stop them all. ThreadScheduler is the production implementation.
"""

import concurrent.futures
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class TimerHandle:
    """A scheduled one-shot or repeating callback that can be cancelled."""

    def __init__(self):
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class Scheduler(ABC):
    """Clock, timers and a background runner."""

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Run callback(*args) once after delay seconds."""

    @abstractmethod
    def call_every(self, interval: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Run callback(*args) every interval seconds until cancelled."""

    @abstractmethod
    def run_async(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> concurrent.futures.Future:
        """Run fn in the background and return its pending result."""

    @abstractmethod
    def shutdown(self) -> None:
        """Cancel all timers and stop background work."""


def _run_callback(callback: Callable[..., Any], args: tuple) -> None:
    try:
        callback(*args)
    except Exception:
        logger.exception("Scheduled callback %r failed", callback)


class ThreadScheduler(Scheduler):
    """Timers on daemon threads, tasks on a thread pool."""

    def __init__(self, max_workers: int = 8):
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="PlaybackWorker"
        )
        self._lock = threading.Lock()
        self._handles: List[TimerHandle] = []
        self._closed = False

    def now(self) -> float:
        return time.monotonic()

    def _track(self, handle: TimerHandle) -> None:
        with self._lock:
            self._handles = [h for h in self._handles if not h.cancelled]
            self._handles.append(handle)

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle()

        def run():
            if not handle._cancelled.wait(max(0.0, delay)):
                handle.cancel()
                _run_callback(callback, args)

        self._track(handle)
        threading.Thread(target=run, daemon=True, name="PlaybackTimer").start()
        return handle

    def call_every(self, interval: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle()

        def run():
            while not handle._cancelled.wait(interval):
                _run_callback(callback, args)

        self._track(handle)
        threading.Thread(target=run, daemon=True, name="PlaybackTicker").start()
        return handle

    def run_async(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> concurrent.futures.Future:
        return self._executor.submit(fn, *args, **kwargs)

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            handles = list(self._handles)
            self._handles.clear()
        for handle in handles:
            handle.cancel()
        self._executor.shutdown(wait=False)
