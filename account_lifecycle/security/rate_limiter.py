"""In-memory sliding window rate limiter for lifecycle endpoints."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, DefaultDict, Protocol


class RateLimiter(Protocol):
    def allow(self, action: str, subject: str) -> bool: ...


def limiter_key(action: str, subject: str) -> str:
    """Build the bucket key; subjects such as emails are compared case-insensitively."""
    return f"{action}:{subject.strip().lower()}"


class SlidingWindowRateLimiter:
    """Thread-safe sliding window limiter with one bucket per action and subject."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def allow(self, action: str, subject: str) -> bool:
        """Return ``True`` and record the attempt when the bucket has room."""
        key = limiter_key(action, subject)
        now = self._clock()
        with self._lock:
            queue = self._prune(key, now)
            if len(queue) >= self._max_requests:
                return False
            queue.append(now)
            return True

    def retry_after(self, action: str, subject: str) -> float:
        """Seconds until the oldest attempt in a full bucket leaves the window."""
        key = limiter_key(action, subject)
        now = self._clock()
        with self._lock:
            queue = self._prune(key, now)
            if len(queue) < self._max_requests:
                return 0.0
            return max(0.0, self._window - (now - queue[0]))

    def _prune(self, key: str, now: float) -> Deque[float]:
        queue = self._events[key]
        while queue and now - queue[0] >= self._window:
            queue.popleft()
        return queue
