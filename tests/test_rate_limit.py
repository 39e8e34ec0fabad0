from __future__ import annotations

import asyncio

import pytest

from whatsroute.core.rate_limit import DestinationRateLimiter, TokenBucket


class Ticker:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


def test_bucket_allows_burst_then_waits() -> None:
    ticker = Ticker()
    bucket = TokenBucket(rate_per_second=0.5, capacity=2, monotonic=ticker)

    async def _drain() -> None:
        await bucket.acquire()
        await bucket.acquire()

    asyncio.run(_drain())

    assert bucket.time_until_ready() == pytest.approx(2.0)
    ticker.value += 1
    assert bucket.time_until_ready() == pytest.approx(1.0)
    ticker.value += 1
    assert bucket.time_until_ready() == 0.0


def test_bucket_refill_is_capped_at_capacity() -> None:
    ticker = Ticker()
    bucket = TokenBucket(rate_per_second=1.0, capacity=2, monotonic=ticker)
    ticker.value += 3600

    asyncio.run(bucket.acquire())
    asyncio.run(bucket.acquire())

    assert bucket.time_until_ready() == pytest.approx(1.0)


def test_bucket_rejects_bad_parameters() -> None:
    with pytest.raises(ValueError):
        TokenBucket(rate_per_second=0, capacity=1)
    with pytest.raises(ValueError):
        TokenBucket(rate_per_second=1, capacity=0)


def test_destinations_have_independent_buckets() -> None:
    ticker = Ticker()
    limiter = DestinationRateLimiter(rate_per_second=0.5, burst=1, monotonic=ticker)

    asyncio.run(limiter.acquire("120363000000000001@g.us"))

    assert limiter.bucket("120363000000000001@g.us").time_until_ready() > 0
    assert limiter.bucket("120363000000000002@g.us").time_until_ready() == 0.0
    assert limiter.bucket("120363000000000001@g.us") is limiter.bucket("120363000000000001@g.us")
