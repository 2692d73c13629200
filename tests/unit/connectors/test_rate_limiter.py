"""Unit tests for the async token bucket."""

import pytest

from reviewsync.connectors.rate_limiter import AsyncTokenBucket


class FakeTime:
    """Clock and sleep sharing one timeline."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_time():
    return FakeTime()


def _bucket(fake_time, per_hour=3600, burst=3):
    return AsyncTokenBucket(per_hour, burst, clock=fake_time.clock, sleep=fake_time.sleep)


def test_burst_then_empty(fake_time):
    bucket = _bucket(fake_time)
    assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]


def test_refills_over_time(fake_time):
    bucket = _bucket(fake_time)
    for _ in range(3):
        bucket.try_acquire()
    fake_time.now += 1.0  # 3600/h = 1 token per second
    assert bucket.try_acquire() is True
    assert bucket.try_acquire() is False


def test_never_exceeds_capacity(fake_time):
    bucket = _bucket(fake_time)
    fake_time.now += 1000
    assert bucket.get_status()["tokens_available"] == 3


@pytest.mark.asyncio
async def test_acquire_waits_when_empty(fake_time):
    bucket = _bucket(fake_time)
    for _ in range(3):
        assert await bucket.acquire() == 0.0

    waited = await bucket.acquire()

    assert waited == pytest.approx(1.0)
    assert fake_time.sleeps == [pytest.approx(1.0)]


def test_invalid_configuration():
    with pytest.raises(ValueError):
        AsyncTokenBucket(requests_per_hour=0)
