"""Cached "is there anything new?" probes.

Two probes sit behind TTL caches: a per-repository dashboard probe that
counts recently updated remote changes missing locally, and a per-change
probe that compares the remote update time with the local sync time.
A failed probe serves the last cached answer marked stale; with nothing
cached it returns a conservative default carrying the error.
"""

import asyncio
import contextlib
import dataclasses
import logging
import threading
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from reviewsync import metrics
from reviewsync.connectors.base import RemoteClient
from reviewsync.errors import ChangeNotFoundError
from reviewsync.fetcher import ChangeFetcher
from reviewsync.models import ChangeUpdateResult, DashboardUpdateResult, utcnow
from reviewsync.storage import ChangeStore

logger = logging.getLogger("reviewsync.update_check")

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_TTL_SECONDS = 60.0
DEFAULT_PROBE_PAGE_SIZE = 25
DEFAULT_PROBE_WINDOW_DAYS = 30


class ProbeCache(Generic[K, V]):
    """Per-key (value, computed_at) map with a fixed TTL.

    The lock guards only dict access, never a probe.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[K, tuple[V, float]] = {}
        self._lock = threading.Lock()

    def get_fresh(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        value, computed_at = entry
        if self._clock() - computed_at < self.ttl_seconds:
            return value
        return None

    def get_any(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
        return entry[0] if entry else None

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())

    def invalidate(self, key: K | None = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)


class UpdateCheckCache(Generic[K, V]):
    """TTL cache in front of an async probe with stale-on-error fallback.

    Args:
        name: Scope label for logs and metrics (dashboard, change)
        probe: Async callable computing a fresh result for a key
        default: Builds the conservative result for a key and error text
        ttl_seconds: Freshness window
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        name: str,
        probe: Callable[[K], Awaitable[V]],
        default: Callable[[K, str], V],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._probe = probe
        self._default = default
        self.cache: ProbeCache[K, V] = ProbeCache(ttl_seconds, clock)
        # key -> [lock, callers holding or waiting on it]
        self._key_locks: dict[K, list] = {}

    @contextlib.asynccontextmanager
    async def _single_flight(self, key: K) -> AsyncIterator[None]:
        entry = self._key_locks.get(key)
        if entry is None:
            entry = self._key_locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._key_locks[key]

    async def check(self, key: K) -> V:
        cached = self.cache.get_fresh(key)
        if cached is not None:
            metrics.update_checks_total.labels(scope=self.name, outcome="hit").inc()
            return cached

        # Concurrent misses for one key share a single probe
        async with self._single_flight(key):
            cached = self.cache.get_fresh(key)
            if cached is not None:
                metrics.update_checks_total.labels(scope=self.name, outcome="hit").inc()
                return cached
            try:
                value = await self._probe(key)
            except ChangeNotFoundError:
                raise
            except Exception as e:
                return self._fallback(key, e)

        self.cache.put(key, value)
        metrics.update_checks_total.labels(scope=self.name, outcome="miss").inc()
        return value

    def _fallback(self, key: K, error: Exception) -> V:
        previous = self.cache.get_any(key)
        if previous is not None:
            metrics.update_checks_total.labels(scope=self.name, outcome="stale").inc()
            logger.warning(
                "Update probe %s failed for %s, serving stale result: %s",
                self.name,
                key,
                error,
            )
            return dataclasses.replace(previous, stale=True, error=str(error))
        metrics.update_checks_total.labels(scope=self.name, outcome="default").inc()
        logger.warning(
            "Update probe %s failed for %s with nothing cached: %s", self.name, key, error
        )
        return self._default(key, str(error))


class UpdateCheckService:
    """Dashboard and per-change update checks over cached probes."""

    def __init__(
        self,
        store: ChangeStore,
        fetcher: ChangeFetcher,
        client: RemoteClient,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        page_size: int = DEFAULT_PROBE_PAGE_SIZE,
        window_days: int = DEFAULT_PROBE_WINDOW_DAYS,
        now: Callable[[], datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.client = client
        self.page_size = page_size
        self.window = timedelta(days=window_days)
        self._now = now
        self.dashboard = UpdateCheckCache(
            "dashboard",
            self._probe_dashboard,
            self._dashboard_default,
            ttl_seconds,
            clock,
        )
        self.changes = UpdateCheckCache(
            "change",
            self._probe_change,
            self._change_default,
            ttl_seconds,
            clock,
        )

    async def check_dashboard(self, repository: str) -> DashboardUpdateResult:
        return await self.dashboard.check(repository)

    async def check_change(self, change_id: int) -> ChangeUpdateResult:
        """Raises ChangeNotFoundError when the change is not stored."""
        return await self.changes.check(change_id)

    def cached_dashboard(self, repository: str) -> DashboardUpdateResult | None:
        """Last dashboard result regardless of age, without probing."""
        return self.dashboard.cache.get_any(repository)

    # --- Probes ---

    async def _probe_dashboard(self, repository: str) -> DashboardUpdateResult:
        now = self._now()
        recent = await self.fetcher.fetch_recent(now - self.window, self.page_size)
        numbers = {change.number for change in recent}
        repository_id = self.store.get_repository_id(repository)
        if repository_id is None:
            missing = len(numbers)
        else:
            missing = len(numbers - self.store.existing_numbers(repository_id, numbers))
        logger.info(
            "dashboard_update_check",
            extra={"repository": repository, "recent": len(numbers), "missing": missing},
        )
        return DashboardUpdateResult(
            has_missing_recent_changes=missing > 0,
            missing_count=missing,
            last_checked_at=now,
        )

    async def _probe_change(self, change_id: int) -> ChangeUpdateResult:
        stored = self.store.get_change(change_id)
        if stored is None:
            raise ChangeNotFoundError(change_id)
        now = self._now()
        remote = await self.client.get_change(stored.remote_id)
        if stored.last_synced_at is None:
            updated = True
        else:
            updated = remote.updated > stored.last_synced_at
        return ChangeUpdateResult(
            updated_since_last_sync=updated,
            last_synced_at=stored.last_synced_at,
            remote_updated_at=remote.updated,
            last_checked_at=now,
        )

    # --- Conservative defaults ---

    def _dashboard_default(self, repository: str, error: str) -> DashboardUpdateResult:
        return DashboardUpdateResult(
            has_missing_recent_changes=False,
            missing_count=0,
            last_checked_at=self._now(),
            error=error,
        )

    def _change_default(self, change_id: int, error: str) -> ChangeUpdateResult:
        stored = self.store.get_change(change_id)
        return ChangeUpdateResult(
            updated_since_last_sync=False,
            last_synced_at=stored.last_synced_at if stored else None,
            last_checked_at=self._now(),
            error=error,
        )
