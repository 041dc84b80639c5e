# core/rate_limit.py
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    retry_after_seconds: int


class FixedWindowRateLimiter:
    """In-process counter per client key. Each key gets `max_requests` per window."""

    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = max(1, int(window_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, Tuple[int, float]] = {}

    def _seconds_left(self, reset_at: float, now: float) -> int:
        return max(1, math.ceil(reset_at - now))

    def hit(self, key: str) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            # expired windows are dropped on every hit
            for stale in [k for k, (_, reset_at) in self._buckets.items() if reset_at <= now]:
                del self._buckets[stale]

            bucket = self._buckets.get(key)
            if bucket is None:
                self._buckets[key] = (1, now + self.window_seconds)
                return RateLimitResult(False, self.window_seconds)

            count, reset_at = bucket
            if count >= self.max_requests:
                return RateLimitResult(True, self._seconds_left(reset_at, now))

            self._buckets[key] = (count + 1, reset_at)
            return RateLimitResult(False, self._seconds_left(reset_at, now))

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
