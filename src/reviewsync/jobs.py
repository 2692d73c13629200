"""Sync job trigger surface.

Callers ask for a sync and get an immediate accepted/rejected answer; the
pass runs in a background task holding a gate slot and bounded by its own
timeout, independent of the caller's lifetime. Clearing storage drains the
gate first so no running pass writes into a dropped schema.
"""

import asyncio
import logging
from collections.abc import Awaitable
from enum import Enum

from reviewsync import metrics
from reviewsync.gate import ConcurrencyGate
from reviewsync.models import ChangeUpdateResult, DashboardUpdateResult, SyncResult
from reviewsync.storage import ChangeStore
from reviewsync.sync import SyncCoordinator
from reviewsync.update_check import UpdateCheckService

logger = logging.getLogger("reviewsync.jobs")

DEFAULT_SYNC_TIMEOUT = 600.0
DEFAULT_FULL_SYNC_TIMEOUT = 900.0


class TriggerOutcome(str, Enum):
    """Answer to a sync request."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"


class SyncJobRunner:
    """Admits sync requests through a ConcurrencyGate and runs them detached.

    Attributes:
        coordinator: SyncCoordinator that performs the passes
        gate: Bounds concurrent passes
        store: Local store (cleared by clear_storage)
        update_checks: Cached update probes
        last_results: Most recent SyncResult per job key
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        gate: ConcurrencyGate,
        store: ChangeStore,
        update_checks: UpdateCheckService | None = None,
        sync_timeout: float = DEFAULT_SYNC_TIMEOUT,
        full_sync_timeout: float = DEFAULT_FULL_SYNC_TIMEOUT,
    ) -> None:
        self.coordinator = coordinator
        self.gate = gate
        self.store = store
        self.update_checks = update_checks
        self.sync_timeout = sync_timeout
        self.full_sync_timeout = full_sync_timeout
        self.last_results: dict[str, SyncResult] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> int:
        return len(self._tasks)

    # -- Triggers ---------------------------------------------------------

    def trigger_sync(self, repository: str, force_full: bool = False) -> TriggerOutcome:
        """Start a repository pass in the background if a slot is free."""
        loop = asyncio.get_running_loop()
        if not self.gate.try_acquire():
            return self._reject("repository", repository)
        timeout = self.full_sync_timeout if force_full else self.sync_timeout
        key = f"{'full' if force_full else 'incremental'}:{repository}"
        self._spawn(loop, key, self.coordinator.sync(repository, force_full=force_full), timeout)
        logger.info(
            "sync_accepted",
            extra={"repository": repository, "force_full": force_full, "timeout": timeout},
        )
        return TriggerOutcome.ACCEPTED

    def trigger_sync_one(self, change_id: int, force: bool = True) -> TriggerOutcome:
        """Start a single-change pass in the background if a slot is free."""
        loop = asyncio.get_running_loop()
        if not self.gate.try_acquire():
            return self._reject("change", str(change_id))
        key = f"change:{change_id}"
        self._spawn(
            loop, key, self.coordinator.sync_one(change_id, force=force), self.sync_timeout
        )
        logger.info("sync_one_accepted", extra={"change_id": change_id})
        return TriggerOutcome.ACCEPTED

    def _reject(self, kind: str, target: str) -> TriggerOutcome:
        metrics.gate_rejections_total.labels(kind=kind).inc()
        logger.warning(
            "Sync rejected for %s: %d of %d slots in use, try again after a running sync completes",
            target,
            self.gate.in_flight,
            self.gate.capacity,
        )
        return TriggerOutcome.REJECTED

    def _spawn(
        self,
        loop: asyncio.AbstractEventLoop,
        key: str,
        job: Awaitable[SyncResult],
        timeout: float,
    ) -> None:
        task = loop.create_task(
            self._run(key, job, timeout), name=f"sync-{key}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._finish)

    def _finish(self, task: asyncio.Task) -> None:
        # Runs even when the task was cancelled before its first step
        self._tasks.discard(task)
        self.gate.release()

    async def _run(self, key: str, job: Awaitable[SyncResult], timeout: float) -> None:
        try:
            result = await asyncio.wait_for(job, timeout=timeout)
            self.last_results[key] = result
        except asyncio.TimeoutError:
            logger.error("Sync %s timed out after %.0fs", key, timeout)
        except asyncio.CancelledError:
            logger.warning("Sync %s cancelled", key)
            raise
        except Exception as e:
            logger.error("Sync %s failed: %s", key, e)

    # -- Update checks ----------------------------------------------------

    async def check_updates(self, repository: str) -> DashboardUpdateResult:
        """Dashboard probe; never waits on a running sync."""
        if self.update_checks is None:
            raise RuntimeError("Update checks are not configured")
        return await self.update_checks.check_dashboard(repository)

    async def check_change_updates(self, change_id: int) -> ChangeUpdateResult:
        if self.update_checks is None:
            raise RuntimeError("Update checks are not configured")
        return await self.update_checks.check_change(change_id)

    # -- Maintenance ------------------------------------------------------

    async def clear_storage(self) -> None:
        """Wait for every admitted pass to finish, then drop all local data."""
        logger.warning(
            "Clearing local storage, waiting for %d running sync(s)", self.gate.in_flight
        )
        await self.gate.drain()
        self.store.clear_all()
        self.last_results.clear()
        if self.update_checks is not None:
            self.update_checks.dashboard.cache.invalidate()
            self.update_checks.changes.cache.invalidate()

    async def wait(self) -> None:
        """Wait for running passes (shutdown and tests)."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait()
