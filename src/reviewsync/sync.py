"""Incremental sync of remote changes into the local store.

Orchestrates ChangeFetcher to stream changes updated since the last pass,
writes each change row, records status transitions, and only re-fetches the
expensive sub-resources (revisions, files, diffs, comments, messages,
labels) when the remote update timestamp moved forward.

Per-change failures are logged and skipped. A listing failure aborts the
pass before the repository cursor is advanced.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime

from reviewsync import metrics
from reviewsync.analysis import AnalysisRetrier
from reviewsync.connectors.base import RemoteClient
from reviewsync.diff_policy import DiffPolicy
from reviewsync.errors import ChangeNotFoundError
from reviewsync.fetcher import ChangeFetcher
from reviewsync.models import (
    RESERVED_PATHS,
    Change,
    Comment,
    FileInfo,
    Revision,
    StoredChange,
    SyncResult,
    utcnow,
)
from reviewsync.state_tracker import StateTracker
from reviewsync.storage import ChangeStore

logger = logging.getLogger("reviewsync.sync")


def _comment_order(comment: Comment) -> tuple:
    stamp = comment.updated or comment.created
    return (stamp.timestamp() if stamp else 0.0, comment.comment_id)


class SyncCoordinator:
    """Runs sync passes for one repository of one review server.

    Attributes:
        store: Local SQLite store
        client: Remote client used for comments and diffs
        fetcher: Listing and detail fetches
        diff_policy: Decides which diffs are fetched and stored
        tracker: Records status transitions
        analysis: Schedules background analysis
    """

    def __init__(
        self,
        store: ChangeStore,
        client: RemoteClient,
        fetcher: ChangeFetcher,
        diff_policy: DiffPolicy,
        tracker: StateTracker,
        analysis: AnalysisRetrier,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.client = client
        self.fetcher = fetcher
        self.diff_policy = diff_policy
        self.tracker = tracker
        self.analysis = analysis
        self._now = now

    async def sync(self, repository: str, force_full: bool = False) -> SyncResult:
        """Run one incremental (or forced full) pass.

        Args:
            repository: Repository name (Gerrit project or owner/repo)
            force_full: Ignore the cursor and look back the default window

        Returns:
            SyncResult with per-kind counts, since and the new cursor

        Raises:
            RemoteClientError: When listing fails; the cursor is unchanged
        """
        start = time.monotonic()
        mode = "full" if force_full else "incremental"
        result = SyncResult(mode=mode)

        repository_id = self.store.get_or_create_repository(repository, self.client.source)
        cursor = self.store.get_cursor(repository_id)
        since = self.fetcher.compute_since(cursor, force_full, self._now())
        result.since = since

        logger.info(
            "Starting sync: mode=%s, repository=%s, since=%s",
            mode,
            repository,
            since.isoformat(),
        )

        try:
            async for change in self.fetcher.iter_changes(since):
                result.changes_seen += 1
                await self._sync_change(repository_id, change, result)
        except Exception as e:
            result.duration_seconds = time.monotonic() - start
            metrics.sync_passes_total.labels(mode=mode, status="failed").inc()
            logger.error(
                "Sync aborted for %s after %d changes, cursor not advanced: %s",
                repository,
                result.changes_seen,
                e,
            )
            raise

        # The cursor never moves behind the lower bound of the pass
        new_cursor = max(self._now(), since)
        self.store.set_cursor(repository_id, new_cursor)
        result.cursor = new_cursor
        result.duration_seconds = time.monotonic() - start

        metrics.sync_passes_total.labels(mode=mode, status="success").inc()
        metrics.sync_duration_seconds.labels(mode=mode).observe(result.duration_seconds)
        logger.info("sync_complete", extra={"repository": repository, **result.to_dict()})
        return result

    async def sync_one(self, change_id: int, force: bool = False) -> SyncResult:
        """Re-sync a single stored change without moving the repository cursor.

        Args:
            change_id: Local change row id
            force: Fetch sub-resources even when the remote timestamp is unchanged

        Raises:
            ChangeNotFoundError: When the change is not stored
            RemoteClientError: When the change cannot be fetched
        """
        start = time.monotonic()
        stored = self.store.get_change(change_id)
        if stored is None:
            raise ChangeNotFoundError(change_id)

        result = SyncResult(mode="single")
        change = await self.client.get_change(stored.remote_id)
        result.changes_seen = 1
        await self._sync_change(stored.repository_id, change, result, force=force)
        result.duration_seconds = time.monotonic() - start

        status = "failed" if result.errors else "success"
        metrics.sync_passes_total.labels(mode="single", status=status).inc()
        logger.info("sync_one_complete", extra={"change_id": change_id, **result.to_dict()})
        return result

    # -- Per-change ------------------------------------------------------

    async def _sync_change(
        self,
        repository_id: int,
        change: Change,
        result: SyncResult,
        force: bool = False,
    ) -> None:
        """Write one change and, when it moved, its sub-resources. Fail-open."""
        try:
            stored = self.store.get_change_by_number(repository_id, change.number)
            is_new = stored is None
            transitioned = False

            if is_new:
                change_id = self.store.insert_change(repository_id, change)
                result.changes_created += 1
                outcome = "created"
            else:
                change_id = stored.id
                self.store.update_change(change_id, change)
                transitioned = self.tracker.track_transition(change_id, change.status)
                if transitioned:
                    result.transitions += 1

            complete = True
            changed = is_new or force or self._remote_moved(stored, change)
            if changed:
                if not is_new:
                    result.changes_updated += 1
                    outcome = "updated"
                errors_before = result.errors
                try:
                    await self._sync_subresources(change_id, change, result)
                except Exception as e:
                    result.record_error(f"change {change.number}: {e}")
                    logger.error(
                        "Failed to sync sub-resources of change %d: %s", change.number, e
                    )
                complete = result.errors == errors_before
            else:
                result.changes_unchanged += 1
                outcome = "unchanged"

            # Owed once the row and status are written, even if sub-resources failed
            if is_new or transitioned:
                self.analysis.trigger(change_id)
                result.analyses_scheduled += 1

            if complete:
                self.store.mark_synced(change_id, self._now())
            else:
                # Re-fetched the next time the change is listed
                self.store.mark_synced(change_id, None)
                outcome = "error"
            metrics.changes_processed_total.labels(outcome=outcome).inc()
        except Exception as e:
            result.record_error(f"change {change.number}: {e}")
            metrics.changes_processed_total.labels(outcome="error").inc()
            logger.error("Failed to sync change %d: %s", change.number, e)

    @staticmethod
    def _remote_moved(stored: StoredChange | None, change: Change) -> bool:
        if stored is None or stored.last_synced_at is None:
            return True
        return change.updated > stored.updated

    async def _sync_subresources(
        self, change_id: int, change: Change, result: SyncResult
    ) -> None:
        metrics.subresource_fetches_total.labels(kind="detail").inc()
        detail = await self.fetcher.fetch_detail(change.remote_id)
        revisions = sorted(detail.revisions, key=lambda r: r.number)
        current = revisions[-1].number if revisions else None

        for revision in revisions:
            await self._sync_revision(
                change_id, detail.change, revision, revision.number == current, result
            )

        try:
            metrics.subresource_fetches_total.labels(kind="comments").inc()
            comments = await self.client.list_comments(change)
            for comment in sorted(comments, key=_comment_order):
                self.store.upsert_comment(change_id, comment)
                result.comments_synced += 1
        except Exception as e:
            result.record_error(f"change {change.number} comments: {e}")
            logger.warning("Failed to sync comments for change %d: %s", change.number, e)

        try:
            for message in detail.messages:
                self.store.upsert_message(change_id, message)
                result.messages_synced += 1
        except Exception as e:
            result.record_error(f"change {change.number} messages: {e}")
            logger.warning("Failed to sync messages for change %d: %s", change.number, e)

        try:
            result.labels_synced += self.store.replace_labels(change_id, detail.labels)
        except Exception as e:
            result.record_error(f"change {change.number} labels: {e}")
            logger.warning("Failed to sync labels for change %d: %s", change.number, e)

    async def _sync_revision(
        self,
        change_id: int,
        change: Change,
        revision: Revision,
        is_current: bool,
        result: SyncResult,
    ) -> None:
        try:
            revision_db_id = self.store.upsert_revision(change_id, revision)
            result.revisions_synced += 1
        except Exception as e:
            result.record_error(f"change {change.number} patchset {revision.number}: {e}")
            logger.warning(
                "Failed to save patchset %d of change %d: %s",
                revision.number,
                change.number,
                e,
            )
            return

        for path in sorted(revision.files):
            if path in RESERVED_PATHS:
                continue
            info = revision.files[path]
            try:
                file_db_id = self.store.upsert_file(revision_db_id, info)
                result.files_synced += 1
                # Diffs are fetched for the latest patchset only
                if is_current and self.diff_policy.should_diff(info):
                    await self._sync_diff(file_db_id, change, revision, info, result)
            except Exception as e:
                result.record_error(f"change {change.number} file {path}: {e}")
                logger.warning(
                    "Failed to sync file %s of change %d: %s", path, change.number, e
                )

    async def _sync_diff(
        self,
        file_db_id: int,
        change: Change,
        revision: Revision,
        info: FileInfo,
        result: SyncResult,
    ) -> None:
        metrics.subresource_fetches_total.labels(kind="diff").inc()
        diff = await self.client.get_file_diff(change, revision, info)
        decision = self.diff_policy.process(diff)
        if decision.store:
            self.store.upsert_diff(file_db_id, decision.text, decision.size)
            result.diffs_stored += 1
        elif decision.stats_only:
            self.store.upsert_diff(file_db_id, "", decision.size, stats_only=True)
            result.diffs_stats_only += 1
        else:
            self.store.upsert_diff(file_db_id, "", 0, is_binary=True)
