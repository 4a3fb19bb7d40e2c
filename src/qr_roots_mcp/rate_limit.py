"""Minimum-interval rate limiter.

One instance guards one resource: the SecurityValidator owns one for its
filesystem-probing pipeline and the RootsManager owns an independent one for
roots notifications. The clock is injectable so tests can advance time.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable


class RateLimiter:
    """Admit at most one call per ``min_interval`` seconds."""

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self._min_interval = min_interval
        self._clock = clock
        self._last_accepted: float | None = None
        self._lock = threading.Lock()

    @classmethod
    def per_second(cls, changes_per_second: float, **kwargs) -> RateLimiter:
        """Build a limiter from a rate expressed in changes per second."""
        if changes_per_second <= 0:
            raise ValueError("changes_per_second must be > 0")
        return cls(1.0 / changes_per_second, **kwargs)

    @property
    def min_interval(self) -> float:
        return self._min_interval

    def try_acquire(self) -> bool:
        """Record and admit the call if the interval elapsed, else reject it.

        Rejected calls leave the last-accepted timestamp untouched.
        """
        with self._lock:
            now = self._clock()
            if self._last_accepted is not None and now - self._last_accepted < self._min_interval:
                return False
            self._last_accepted = now
            return True

    def retry_after(self) -> float:
        """Seconds until the next call would be admitted (0 when admissible now)."""
        with self._lock:
            if self._last_accepted is None:
                return 0.0
            remaining = self._min_interval - (self._clock() - self._last_accepted)
            return max(remaining, 0.0)

    def reset(self) -> None:
        with self._lock:
            self._last_accepted = None
