import threading
import time
from collections import deque
from typing import Callable, Deque, Dict


class SlidingWindowRateLimiter:
    """At most ``max_requests`` per key within any ``window_seconds`` span.

    Keys whose timestamps have all expired are evicted every
    ``evict_every`` calls, so memory follows the number of active users.
    """

    def __init__(self, max_requests: int, window_seconds: float, evict_every: int = 1000,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.evict_every = evict_every
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._calls = 0
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            self._calls += 1
            if self._calls % self.evict_every == 0:
                self._evict(cutoff)

            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def evict_expired(self) -> int:
        with self._lock:
            return self._evict(self._clock() - self.window_seconds)

    def _evict(self, cutoff: float) -> int:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        return len(stale)

    def tracked_keys(self) -> int:
        return len(self._hits)
