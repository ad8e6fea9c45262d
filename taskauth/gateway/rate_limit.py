"""
TaskAuth - Rate Limiter

In-memory token-bucket admission control keyed by client identifier.
Guards OAuth start, session refresh and other abuse-prone endpoints.

Concurrency:
- The bucket map lock is held only for find-or-insert and sweeps
- Token arithmetic happens under each bucket's own lock
- Buckets idle beyond twice the window are evicted; the map is capped
"""

import threading
import time
from typing import Callable, Dict, Optional

from pydantic import BaseModel

from taskauth.logging import get_logger


logger = get_logger(__name__)


class RateLimitDecision(BaseModel):
    """Outcome of one admission check."""
    allowed: bool
    remaining: int
    retry_after: float = 0.0


class _Bucket:
    """A single token bucket for one client."""

    __slots__ = ("tokens", "last_refill", "last_seen", "lock")

    def __init__(self, capacity: float, now: float):
        self.tokens: float = capacity
        self.last_refill: float = now
        self.last_seen: float = now
        self.lock = threading.Lock()


class RateLimiter:
    """
    Token-bucket rate limiter.

    Args:
        capacity: Maximum burst size
        window_seconds: Time to refill an empty bucket completely
        max_buckets: Upper bound on tracked keys
        clock: Monotonic seconds source
    """

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        max_buckets: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0 or window_seconds <= 0:
            raise ValueError("capacity and window_seconds must be positive")
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.rate = capacity / window_seconds
        self.max_buckets = max(1, max_buckets)
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitDecision:
        """Consume one token for key if available."""
        bucket = self._get_bucket(key)
        with bucket.lock:
            now = self._clock()
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.rate)
            bucket.last_refill = now
            bucket.last_seen = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return RateLimitDecision(allowed=True, remaining=int(bucket.tokens))

            retry_after = (1.0 - bucket.tokens) / self.rate
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

    def allow(self, key: str) -> bool:
        """Return True if the request is allowed, consuming one token."""
        return self.check(key).allowed

    def sweep(self) -> int:
        """Evict buckets idle for more than twice the window."""
        cutoff = self._clock() - 2 * self.window_seconds
        with self._lock:
            return self._sweep_locked(cutoff)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key."""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    def __len__(self) -> int:
        return len(self._buckets)

    def _get_bucket(self, key: str) -> _Bucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is not None:
                return bucket

            now = self._clock()
            if len(self._buckets) >= self.max_buckets:
                self._sweep_locked(now - 2 * self.window_seconds)
            if len(self._buckets) >= self.max_buckets:
                oldest = min(self._buckets, key=lambda k: self._buckets[k].last_seen)
                del self._buckets[oldest]
                logger.warning("rate_limit_bucket_evicted", max_buckets=self.max_buckets)

            bucket = _Bucket(self.capacity, now)
            self._buckets[key] = bucket
            return bucket

    def _sweep_locked(self, cutoff: float) -> int:
        stale = [k for k, b in self._buckets.items() if b.last_seen < cutoff]
        for k in stale:
            del self._buckets[k]
        return len(stale)
