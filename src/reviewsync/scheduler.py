"""Periodic incremental sync trigger.

Submits an incremental sync through the SyncJobRunner on a fixed interval.
A tick that finds the gate full is logged and skipped; the next tick tries
again.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from reviewsync.jobs import SyncJobRunner, TriggerOutcome

logger = logging.getLogger("reviewsync.scheduler")


class PeriodicScheduler:
    """Triggers ``runner.trigger_sync(repository)`` every ``interval_seconds``.

    Example:
        >>> scheduler = PeriodicScheduler(runner, "go", interval_seconds=1800)
        >>> task = asyncio.create_task(scheduler.run())
        >>> scheduler.stop()
    """

    def __init__(
        self,
        runner: SyncJobRunner,
        repository: str,
        interval_seconds: float,
        run_on_start: bool = True,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.runner = runner
        self.repository = repository
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self._sleep = sleep
        self._stop = asyncio.Event()
        self.ticks = 0
        self.skipped = 0

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def tick(self) -> TriggerOutcome:
        """Submit one incremental sync."""
        self.ticks += 1
        outcome = self.runner.trigger_sync(self.repository)
        if outcome is TriggerOutcome.REJECTED:
            self.skipped += 1
            logger.info("Scheduled sync skipped, previous syncs still running")
        return outcome

    async def _wait_interval(self) -> None:
        if self._sleep is not None:
            await self._sleep(self.interval_seconds)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Loop until stop() is called."""
        logger.info(
            "scheduler_started",
            extra={"repository": self.repository, "interval_seconds": self.interval_seconds},
        )
        if not self.run_on_start:
            await self._wait_interval()
        while not self._stop.is_set():
            self.tick()
            await self._wait_interval()
        logger.info("scheduler_stopped", extra={"ticks": self.ticks, "skipped": self.skipped})
