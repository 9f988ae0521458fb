"""In-memory token-bucket rate limiter keyed by client address.

A bucket holds ``max_requests`` tokens and refills at ``max_requests / window``
per second, so a client can burst the whole allowance and then sustains the
configured average.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from authgate.core.config import Settings

logger = logging.getLogger(__name__)


class _Bucket:
    __slots__ = ("tokens", "last_refill")

    def __init__(self, capacity: float, now: float):
        self.tokens: float = capacity
        self.last_refill: float = now


@dataclass(frozen=True)
class RateLimitInfo:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(math.ceil(self.reset_after))
        return headers


class RateLimiter:
    """Token bucket per key.

    ``rate`` is tokens added per second, ``capacity`` the burst size. The clock
    must be monotonic in production; tests inject a fake one.
    """

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float] = time.monotonic):
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, cfg: Settings, clock: Callable[[], float] = time.monotonic) -> RateLimiter:
        window = max(cfg.rate_limit_window_seconds, 1e-9)
        return cls(cfg.rate_limit_max_requests / window, cfg.rate_limit_max_requests, clock=clock)

    def check(self, key: str) -> RateLimitInfo:
        """Consume one token for ``key`` and report whether the request may proceed."""
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket(self.capacity, now)

            elapsed = max(now - bucket.last_refill, 0.0)
            bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.rate)
            bucket.last_refill = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                reset_after = (self.capacity - bucket.tokens) / self.rate if self.rate > 0 else 0.0
                return RateLimitInfo(True, self.capacity, int(bucket.tokens), reset_after)

            reset_after = (1.0 - bucket.tokens) / self.rate if self.rate > 0 else 1.0
            return RateLimitInfo(False, self.capacity, 0, reset_after)

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def cleanup(self, max_age: float) -> int:
        """Forget buckets idle for longer than ``max_age`` seconds."""
        with self._lock:
            now = self._clock()
            stale = [k for k, b in self._buckets.items() if now - b.last_refill > max_age]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.debug("Dropped %d idle rate-limit buckets", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)
