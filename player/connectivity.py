"""
Network reachability checks.

is_online() answers "does the OS have a route out" and is cheap; probe()
answers "can we actually reach the API host". The orchestrator only trusts
probe() to decide that a network failure is over.
"""

import logging
import socket
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Connectivity:
    """Reachability checks for the cache and the orchestrator."""

    def __init__(self, probe: Optional[Callable[[], bool]] = None,
                 route_host: str = "8.8.8.8", route_port: int = 80):
        self._probe = probe
        self._route_host = route_host
        self._route_port = route_port

    def is_online(self) -> bool:
        """True when a default route exists (no packets are sent)."""
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect((self._route_host, self._route_port))
                return s.getsockname()[0] != "0.0.0.0"
        except OSError:
            return False

    def probe(self) -> bool:
        """True when the remote host answers; falls back to is_online()."""
        if self._probe is None:
            return self.is_online()
        try:
            return bool(self._probe())
        except Exception as e:
            logger.debug("Connectivity probe failed: %s", e)
            return False
