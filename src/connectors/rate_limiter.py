from __future__ import annotations

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """Blocking token bucket: ``rate`` tokens per second, burst up to ``capacity``."""

    def __init__(
        self,
        rate: float,
        *,
        capacity: float | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be > 0")
        self.rate = float(rate)
        self.capacity = float(capacity if capacity is not None else rate)
        if self.capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._lock = threading.Lock()
        self._tokens = self.capacity
        self._updated = self._clock()

    def acquire(self, tokens: float = 1.0) -> float:
        """Take ``tokens``, sleeping until they are available. Returns seconds waited."""
        if tokens <= 0:
            raise ValueError("tokens must be > 0")
        if tokens > self.capacity:
            raise ValueError("tokens must not exceed bucket capacity")

        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                elapsed = max(0.0, now - self._updated)
                self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
                self._updated = now
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                wait_for = (tokens - self._tokens) / self.rate

            self._sleep(wait_for)
            waited += wait_for


class RateLimiterRegistry:
    """Shares one bucket per upstream API across every client instance."""

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def get(self, key: str, rate: float) -> TokenBucket:
        if not key:
            raise ValueError("rate limiter key must be non-empty")
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                logger.debug("Creating rate limiter key=%s rate=%s/s", key, rate)
                bucket = TokenBucket(rate)
                self._buckets[key] = bucket
            return bucket


_DEFAULT_REGISTRY = RateLimiterRegistry()


def shared_limiter(key: str, rate: float) -> TokenBucket:
    return _DEFAULT_REGISTRY.get(key, rate)


__all__ = ["RateLimiterRegistry", "TokenBucket", "shared_limiter"]
