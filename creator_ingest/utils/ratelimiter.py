"""In-process rolling window rate limiter for queue workers.

Each queue gets its own limiter instance, shared by every worker thread of
that queue: at most ``max_jobs`` jobs may start within any rolling
``window_seconds`` interval. A slot taken for a claim that finds no job is
given back with ``release()``, so idle polling never spends the budget.
This bounds calls into the external provider behind the queue independently
of how many worker slots exist.

Usage pattern:
    limiter = WindowRateLimiter(max_jobs=10, window_seconds=1.0)
    allowed, meta = limiter.check_and_increment()
    if not allowed:
        time.sleep(meta["retry_after"])
    elif not claimed_a_job:
        limiter.release()

Return semantics:
    check_and_increment -> (allowed: bool, meta: dict)
        meta = {
            'limit': int,
            'remaining': int,
            'retry_after': float,   # seconds until a slot frees (0 when allowed)
            'count': int,           # starts inside the current window
        }

Design notes:
 - Sliding log (deque of start timestamps) instead of a fixed window so
   bursts at window boundaries cannot double the effective rate.
 - Thread-safe via a single lock; contention is negligible because the
   critical section is a few deque operations.
 - Limits are per process. Deployments running several worker processes
   should divide the configured limit accordingly.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Tuple


class WindowRateLimiter:
    def __init__(self, max_jobs: int, window_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        if max_jobs < 1:
            raise ValueError("max_jobs must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_jobs = int(max_jobs)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._starts: Deque[float] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._starts and self._starts[0] <= cutoff:
            self._starts.popleft()

    def check_and_increment(self) -> Tuple[bool, dict]:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._starts) < self.max_jobs:
                self._starts.append(now)
                return True, {
                    "limit": self.max_jobs,
                    "remaining": self.max_jobs - len(self._starts),
                    "retry_after": 0.0,
                    "count": len(self._starts),
                }
            retry_after = max(0.0, self._starts[0] + self.window_seconds - now)
            return False, {
                "limit": self.max_jobs,
                "remaining": 0,
                "retry_after": retry_after,
                "count": len(self._starts),
            }

    def release(self) -> None:
        """Return the most recently taken slot (the claim it was taken for found nothing)."""
        with self._lock:
            if self._starts:
                self._starts.pop()

    def get_state(self) -> dict:
        with self._lock:
            self._evict(self._clock())
            return {
                "limit": self.max_jobs,
                "remaining": max(0, self.max_jobs - len(self._starts)),
                "count": len(self._starts),
                "window_seconds": self.window_seconds,
            }

    @classmethod
    def from_config(cls, rate_limit: dict, **kwargs) -> "WindowRateLimiter":
        return cls(int(rate_limit.get("max_jobs", 10)), float(rate_limit.get("window_seconds", 1.0)), **kwargs)


__all__ = ["WindowRateLimiter"]
