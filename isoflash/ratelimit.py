"""Sliding-window rate limiting.

SlidingWindowStore keeps, per caller key, the timestamps of recent hits.
Timestamps older than the window are pruned whenever a key is read, and
``sweep`` drops keys with no remaining hits so memory stays bounded by
the number of active callers. The store is created once per web app and
injected where needed; nothing is kept at module level.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)


class SlidingWindowStore:
    """Per-key sliding-window hit counter.

    Args:
        window: Window length in seconds.
        limit: Maximum hits allowed per key within the window.
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        window: float,
        limit: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.window = window
        self.limit = limit
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> bool:
        """Record a hit for ``key`` if it is within the limit.

        Returns:
            True if the hit was allowed, False if the key is over its limit.
        """
        now = self._clock()
        with self._lock:
            hits = self._pruned(key, now)
            if len(hits) >= self.limit:
                logger.info("Rate limit exceeded for %s", key)
                return False
            hits.append(now)
            self._hits[key] = hits
            return True

    def remaining(self, key: str) -> int:
        """Hits still allowed for ``key`` in the current window."""
        with self._lock:
            hits = self._pruned(key, self._clock())
            return max(0, self.limit - len(hits))

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` may hit again (0 when allowed now)."""
        now = self._clock()
        with self._lock:
            hits = self._pruned(key, now)
            if len(hits) < self.limit:
                return 0.0
            return max(0.0, hits[0] + self.window - now)

    def sweep(self) -> int:
        """Drop keys with no hits left in the window.

        Returns:
            Number of keys removed.
        """
        now = self._clock()
        with self._lock:
            stale = [key for key in self._hits if not self._pruned(key, now)]
            for key in stale:
                del self._hits[key]
        if stale:
            logger.debug("Evicted %d idle rate-limit key(s)", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._hits)

    def _pruned(self, key: str, now: float) -> deque[float]:
        hits = self._hits.get(key, deque())
        cutoff = now - self.window
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits


__all__ = ["SlidingWindowStore"]
