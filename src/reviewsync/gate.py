"""Concurrency gate for sync jobs.

Admission is non-blocking: a full gate rejects the request instead of
queueing it. drain() lets destructive maintenance wait until every admitted
job has finished.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from reviewsync import metrics

logger = logging.getLogger("reviewsync.gate")

DEFAULT_CAPACITY = 3


class CapacityExceeded(RuntimeError):
    """Raised by ConcurrencyGate.slot() when no slot is free."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(
            f"Sync capacity of {capacity} reached; try again after a running sync completes"
        )


class ConcurrencyGate:
    """Counting gate with a non-blocking acquire and a drain barrier.

    Every method runs on the event loop thread, so the counter needs no lock.

    Example:
        >>> gate = ConcurrencyGate(capacity=3)
        >>> if gate.try_acquire():
        ...     try:
        ...         await run_sync()
        ...     finally:
        ...         gate.release()
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def available(self) -> int:
        return self._capacity - self._in_flight

    def try_acquire(self) -> bool:
        """Take a slot if one is free. Never blocks."""
        if self._in_flight >= self._capacity:
            return False
        self._in_flight += 1
        self._idle.clear()
        metrics.sync_jobs_in_flight.set(self._in_flight)
        return True

    def release(self) -> None:
        """Return a slot taken by try_acquire()."""
        if self._in_flight == 0:
            raise RuntimeError("release() called without a matching try_acquire()")
        self._in_flight -= 1
        metrics.sync_jobs_in_flight.set(self._in_flight)
        if self._in_flight == 0:
            self._idle.set()

    async def drain(self) -> None:
        """Return once every slot acquired before or during the wait is released."""
        while self._in_flight:
            await self._idle.wait()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold a slot for the duration of the block.

        Raises:
            CapacityExceeded: When the gate is full
        """
        if not self.try_acquire():
            raise CapacityExceeded(self._capacity)
        try:
            yield
        finally:
            self.release()
