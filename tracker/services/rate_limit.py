"""
Per-platform admission control shared by every worker thread of a process.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Admits at most ``limit`` calls in any rolling ``window`` seconds.

    Admission times are recorded under the lock, so concurrent callers never
    observe a slot that another caller has already taken.
    """

    def __init__(self, limit: int, window: float = 1.0, clock=time.monotonic, sleep=time.sleep, name: str = ""):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window = window
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._admitted: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self.window:
            self._admitted.popleft()

    def acquire(self) -> float:
        """Block until a slot is free; return the admission timestamp."""
        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._admitted) < self.limit:
                    self._admitted.append(now)
                    return now
                wait = self.window - (now - self._admitted[0])
            logger.debug("Rate limit reached for %s; waiting %.3fs", self.name or "limiter", wait)
            self._sleep(max(wait, 0.0))

    def status(self) -> dict:
        with self._lock:
            now = self._clock()
            self._prune(now)
            recent = len(self._admitted)
            reset_in = self.window - (now - self._admitted[0]) if self._admitted else 0.0
        return {
            "limit": self.limit,
            "window": self.window,
            "recent": recent,
            "remaining": max(0, self.limit - recent),
            "reset_in": round(max(reset_in, 0.0), 3),
        }


def build_rate_limiters(clients: dict, window: float = 1.0) -> dict[str, SlidingWindowRateLimiter]:
    """One limiter per supported platform, keyed by platform name."""
    return {
        platform: SlidingWindowRateLimiter(client.rate_limit, window=window, name=platform)
        for platform, client in clients.items()
        if client.supported
    }
