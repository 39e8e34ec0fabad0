"""Per-destination send throttling.

WhatsApp bans numbers that burst into a group, so every destination gets its
own token bucket. Sends to different groups never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict

LOGGER = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket refilled continuously at ``rate_per_second``.

    Example:
        >>> bucket = TokenBucket(rate_per_second=0.5, capacity=2)
        >>> await bucket.acquire()  # immediate
        >>> await bucket.acquire()  # immediate (burst)
        >>> await bucket.acquire()  # waits ~2s
    """

    def __init__(
        self,
        rate_per_second: float,
        capacity: int,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate_per_second <= 0 or capacity < 1:
            raise ValueError("rate must be positive and capacity at least 1")
        self.rate = rate_per_second
        self.capacity = float(capacity)
        self._monotonic = monotonic
        self._tokens = float(capacity)
        self._updated = monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._monotonic()
        elapsed = max(now - self._updated, 0.0)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    def time_until_ready(self) -> float:
        self._refill()
        if self._tokens >= 1:
            return 0.0
        return (1 - self._tokens) / self.rate

    async def acquire(self) -> None:
        """Take one token, sleeping until one is available."""

        # The lock queues waiters so they are served in arrival order.
        async with self._lock:
            wait = self.time_until_ready()
            if wait > 0:
                LOGGER.debug("Throttling send: waiting %.2fs", wait)
                await asyncio.sleep(wait)
                self._refill()
            self._tokens = max(self._tokens - 1, 0.0)


class DestinationRateLimiter:
    """One TokenBucket per destination id, created on first use."""

    def __init__(
        self,
        rate_per_second: float,
        burst: int,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = rate_per_second
        self.burst = burst
        self._monotonic = monotonic
        self._buckets: Dict[str, TokenBucket] = {}

    def bucket(self, destination: str) -> TokenBucket:
        bucket = self._buckets.get(destination)
        if bucket is None:
            bucket = TokenBucket(self.rate, self.burst, self._monotonic)
            self._buckets[destination] = bucket
        return bucket

    async def acquire(self, destination: str) -> None:
        await self.bucket(destination).acquire()
