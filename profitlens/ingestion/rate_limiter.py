"""
Token bucket rate limiter

Owned by the caller and passed explicitly into the loader; there is no
module-level limiter state.
"""

import asyncio
import time
from typing import Callable, Optional


class TokenBucket:
    """
    Async token bucket.

    Args:
        rate: Tokens added per second
        capacity: Maximum burst size
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Optional[Callable[[], float]] = None,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock or time.monotonic
        self._tokens = float(capacity)
        self._updated_at = self._clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated_at = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take tokens without waiting"""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: int = 1) -> None:
        """Wait until ``tokens`` are available, then take them"""
        if tokens > self.capacity:
            raise ValueError("Cannot acquire more tokens than the bucket holds")
        async with self._lock:
            while not self.try_acquire(tokens):
                deficit = tokens - self._tokens
                await asyncio.sleep(deficit / self.rate)
