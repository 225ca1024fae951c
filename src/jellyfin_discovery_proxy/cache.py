from __future__ import annotations

import logging
import threading
import time
from typing import Callable, NamedTuple, Optional

from .upstream import UpstreamIdentity

""" Single-entry identity cache, one per address family.

Brief:
  Holds the most recently fetched upstream identity together with the time it
  was captured. Reads return the identity only while it is fresh; the cache
  never refreshes itself, callers fetch and set() on a miss.

Notes:
  - A duration of 0 means the entry never expires (cache until restart).
  - Entries are replaced wholesale by set(); they are never mutated in place.
"""


_logger = logging.getLogger(__name__)


class CacheSnapshot(NamedTuple):
    """Read-only view of an IdentityCache for the dashboard.

    identity is returned even when stale so the dashboard can show the last
    known value; ``fresh`` says whether get() would currently return it.
    """

    identity: Optional[UpstreamIdentity]
    captured_at: Optional[float]
    age_seconds: Optional[float]
    duration_seconds: float
    fresh: bool


class IdentityCache:
    """Thread-safe holder for one UpstreamIdentity with a freshness window.

    Inputs (constructor):
      - duration_seconds: Freshness window in seconds; 0 disables expiry.
      - name: Label used in log messages (e.g. "ipv4").
      - clock: Monotonic clock used for expiry, injectable for tests.
      - wall_clock: Wall clock used for dashboard timestamps.

    Example use:
        >>> cache = IdentityCache(3600, name="ipv4")
        >>> cache.get() is None
        True
        >>> cache.set(UpstreamIdentity(Id="abc", ServerName="Home"))
        >>> cache.get().id
        'abc'
    """

    def __init__(
        self,
        duration_seconds: float = 24 * 3600,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        duration = float(duration_seconds or 0)
        if duration < 0:
            duration = 0.0
        self.duration = duration
        self.name = name
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.RLock()
        # (identity, captured monotonic, captured wall) replaced as one tuple.
        self._entry: Optional[tuple[UpstreamIdentity, float, float]] = None

    @property
    def never_expires(self) -> bool:
        return self.duration == 0

    def _is_fresh_locked(self, captured: float) -> bool:
        if self.never_expires:
            return True
        return (self._clock() - captured) < self.duration

    def get(self) -> Optional[UpstreamIdentity]:
        """
        Return the cached identity if present and not expired, else None.

        Example use:
            >>> cache = IdentityCache(0)
            >>> cache.get() is None
            True
        """
        with self._lock:
            entry = self._entry
            if entry is None:
                return None
            identity, captured, _wall = entry
            if not self._is_fresh_locked(captured):
                _logger.debug(
                    "Identity cache %s expired (age %.1fs, duration %.0fs)",
                    self.name,
                    self._clock() - captured,
                    self.duration,
                )
                return None
            return identity

    def set(self, identity: UpstreamIdentity) -> None:
        """
        Replace the cached identity and reset its capture time to now.

        Inputs:
            identity: Freshly fetched UpstreamIdentity.
        Outputs:
            None
        """
        entry = (identity, self._clock(), self._wall_clock())
        with self._lock:
            self._entry = entry
        _logger.debug(
            "Identity cache %s updated: id=%s name=%s",
            self.name,
            identity.id,
            identity.name,
        )

    def snapshot(self) -> CacheSnapshot:
        """Brief: Return the current entry and its age for read-only consumers.

        Inputs:
          - None.

        Outputs:
          - CacheSnapshot; identity/captured_at/age_seconds are None when the
            cache has never been set.
        """

        with self._lock:
            entry = self._entry
            if entry is None:
                return CacheSnapshot(None, None, None, self.duration, False)
            identity, captured, wall = entry
            age = max(0.0, self._clock() - captured)
            return CacheSnapshot(
                identity, wall, age, self.duration, self._is_fresh_locked(captured)
            )
