"""Background analysis with bounded retries.

Analysis runs after a change is created or changes status. It is scheduled
as a tracked asyncio task and never blocks or fails the sync pass that
triggered it.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from reviewsync import metrics

logger = logging.getLogger("reviewsync.analysis")

AnalyzeFn = Callable[[int], Awaitable[None]]

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_BACKOFF = 1.0  # seconds, retry n waits base * 2^(n-1)
DEFAULT_TIMEOUT = 300.0  # seconds per attempt


class AnalysisRetrier:
    """Runs an analysis callable with an initial attempt plus bounded retries.

    Attributes:
        analyze: Async callable taking a change id
        max_retries: Retries after the initial attempt
        base_backoff: Delay before the first retry (doubles each retry)
        timeout: Per-attempt timeout in seconds
    """

    def __init__(
        self,
        analyze: AnalyzeFn,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_backoff: float = DEFAULT_BASE_BACKOFF,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.analyze = analyze
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.timeout = timeout
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def backoff(self, retry: int) -> float:
        """Delay before retry number ``retry`` (1-based)."""
        return self.base_backoff * (2 ** (retry - 1))

    def trigger(self, change_id: int) -> asyncio.Task:
        """Schedule analysis for a change and return immediately."""
        task = asyncio.get_running_loop().create_task(
            self.run(change_id), name=f"analysis-{change_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("analysis_scheduled", extra={"change_id": change_id})
        return task

    async def run(self, change_id: int) -> bool:
        """Attempt analysis until it succeeds or retries are exhausted.

        Returns:
            True on success, False after the final failed attempt
        """
        total_attempts = self.max_retries + 1
        for attempt in range(total_attempts):
            if attempt > 0:
                delay = self.backoff(attempt)
                logger.info(
                    "Retrying analysis for change %d in %.1fs (retry %d/%d)",
                    change_id,
                    delay,
                    attempt,
                    self.max_retries,
                )
                await self._sleep(delay)
            try:
                await asyncio.wait_for(self.analyze(change_id), timeout=self.timeout)
            except asyncio.TimeoutError:
                metrics.analysis_attempts_total.labels(status="timeout").inc()
                logger.warning(
                    "Analysis timed out for change %d after %.0fs (attempt %d/%d)",
                    change_id,
                    self.timeout,
                    attempt + 1,
                    total_attempts,
                )
            except Exception as e:
                metrics.analysis_attempts_total.labels(status="failed").inc()
                logger.warning(
                    "Analysis failed for change %d: %s (attempt %d/%d)",
                    change_id,
                    e,
                    attempt + 1,
                    total_attempts,
                )
            else:
                metrics.analysis_attempts_total.labels(status="success").inc()
                logger.info(
                    "analysis_completed",
                    extra={"change_id": change_id, "attempts": attempt + 1},
                )
                return True

        metrics.analysis_attempts_total.labels(status="exhausted").inc()
        logger.error(
            "analysis_retries_exhausted",
            extra={"change_id": change_id, "attempts": total_attempts},
        )
        return False

    async def wait_idle(self) -> None:
        """Wait for every scheduled analysis to finish."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()
