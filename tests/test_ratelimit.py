import asyncio

import pytest

from stocksync.clients.ratelimit import TokenBucket


def test_rate_must_be_positive():
    with pytest.raises(ValueError):
        TokenBucket(rate=0)


def test_burst_up_to_capacity_then_waits(clock):
    waits: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        waits.append(seconds)
        clock.now += seconds

    bucket = TokenBucket(rate=2, clock=clock, sleep=fake_sleep)

    async def run():
        for _ in range(4):
            await bucket.acquire()

    asyncio.run(run())

    assert bucket.acquired == 4
    assert waits == [pytest.approx(0.5), pytest.approx(0.5)]


def test_tokens_refill_over_time_up_to_capacity(clock):
    waits: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        waits.append(seconds)
        clock.now += seconds

    bucket = TokenBucket(rate=4, capacity=4, clock=clock, sleep=fake_sleep)

    async def take(count: int) -> int:
        before = len(waits)
        for _ in range(count):
            await bucket.acquire()
        return len(waits) - before

    async def run():
        assert await take(4) == 0
        # half a second refills two tokens; the third caller waits a quarter second
        clock.now += 0.5
        assert await take(2) == 0
        assert await take(1) == 1
        # a long idle period refills only up to capacity
        clock.now += 10
        assert await take(4) == 0
        assert await take(1) == 1

    asyncio.run(run())

    assert waits == [pytest.approx(0.25), pytest.approx(0.25)]
    assert bucket.acquired == 12


def test_concurrent_callers_share_one_budget(clock):
    async def fake_sleep(seconds: float) -> None:
        clock.now += seconds

    async def run():
        bucket = TokenBucket(rate=5, clock=clock, sleep=fake_sleep)
        await asyncio.gather(*(bucket.acquire() for _ in range(15)))
        return bucket

    bucket = asyncio.run(run())

    assert bucket.acquired == 15
    # 5 tokens up front, then 10 more at 5 per second
    assert clock.now == pytest.approx(2.0)
