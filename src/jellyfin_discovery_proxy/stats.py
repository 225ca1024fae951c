"""
Thread-safe request bookkeeping for the discovery proxy.

Purely observational: nothing in the discovery path reads these values back.
The dashboard consumes snapshot() and get_process_uptime_seconds().
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


_PROCESS_START_TIME = time.time()


def get_process_uptime_seconds() -> float:
    """Return process uptime in seconds since this module was imported.

    Inputs:
      - None.

    Outputs:
      - float seconds since ``_PROCESS_START_TIME``; always >= 0.0.
    """

    return max(0.0, time.time() - _PROCESS_START_TIME)


@dataclass(frozen=True)
class RequestStatsSnapshot:
    """Consistent (time, ip, count) triple read under the stats lock."""

    last_request_time: Optional[float]
    last_request_ip: Optional[str]
    total_requests: int


class RequestStats:
    """
    Records the last accepted requester and a running request counter.

    Example:
        >>> stats = RequestStats()
        >>> stats.record_request("192.0.2.7")
        >>> snap = stats.snapshot()
        >>> (snap.last_request_ip, snap.total_requests)
        ('192.0.2.7', 1)
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last_time: Optional[float] = None
        self._last_ip: Optional[str] = None
        self._total = 0

    def record_request(self, ip: str) -> None:
        now = self._clock()
        with self._lock:
            self._last_time = now
            self._last_ip = str(ip)
            self._total += 1

    def snapshot(self) -> RequestStatsSnapshot:
        with self._lock:
            return RequestStatsSnapshot(self._last_time, self._last_ip, self._total)
