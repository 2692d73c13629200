"""Async token bucket rate limiter for review-server requests.

Smooths request bursts while enforcing an average hourly budget. Used by
the GitHub connector to stay under the primary PAT quota.

Pattern based on the token bucket algorithm:
https://en.wikipedia.org/wiki/Token_bucket
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger("reviewsync.connectors.rate_limiter")

__all__ = ["AsyncTokenBucket"]


class AsyncTokenBucket:
    """Token bucket shared by all requests of one client.

    Example:
        >>> bucket = AsyncTokenBucket(requests_per_hour=4500, burst_size=10)
        >>> await bucket.acquire()  # waits only when the bucket is empty
    """

    def __init__(
        self,
        requests_per_hour: float = 4500,
        burst_size: int = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the bucket full.

        Args:
            requests_per_hour: Average requests allowed per hour
            burst_size: Maximum tokens held (burst)
            clock: Monotonic clock, injectable for tests
            sleep: Async sleep, injectable for tests
        """
        if requests_per_hour <= 0 or burst_size <= 0:
            raise ValueError("requests_per_hour and burst_size must be positive")
        self.capacity = float(burst_size)
        self.refill_rate = requests_per_hour / 3600.0  # tokens per second
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._last_refill = clock()
        self._lock = asyncio.Lock()

        logger.info(
            "rate_limiter_initialized",
            extra={
                "requests_per_hour": requests_per_hour,
                "burst_size": burst_size,
                "refill_rate_per_second": self.refill_rate,
            },
        )

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take tokens without waiting. Returns False when not enough are left."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: int = 1) -> float:
        """Wait until tokens are available and take them.

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    break
                wait_time = (tokens - self._tokens) / self.refill_rate
                logger.debug(
                    "rate_limit_wait",
                    extra={"tokens_available": self._tokens, "wait_seconds": wait_time},
                )
                await self._sleep(wait_time)
                waited += wait_time
        return waited

    def get_status(self) -> dict:
        self._refill()
        return {
            "tokens_available": self._tokens,
            "capacity": self.capacity,
            "refill_rate_per_second": self.refill_rate,
            "utilization_pct": (1 - self._tokens / self.capacity) * 100,
        }
