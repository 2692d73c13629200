"""Wiring of the sync components from a SyncConfig.

The only place that reads configuration: every component below receives
plain values through its constructor.
"""

import logging
from datetime import timedelta

from reviewsync.analysis import AnalysisRetrier, AnalyzeFn
from reviewsync.config import SOURCE_GITHUB, SyncConfig
from reviewsync.connectors.base import RemoteClient
from reviewsync.connectors.gerrit import GerritClient
from reviewsync.connectors.github import GitHubClient
from reviewsync.diff_policy import DiffPolicy
from reviewsync.fetcher import ChangeFetcher
from reviewsync.gate import ConcurrencyGate
from reviewsync.jobs import SyncJobRunner
from reviewsync.state_tracker import StateTracker
from reviewsync.storage import ChangeStore
from reviewsync.sync import SyncCoordinator
from reviewsync.update_check import UpdateCheckService

logger = logging.getLogger("reviewsync.service")


async def log_analysis(change_id: int) -> None:
    """Default analysis hook: records that a change is ready for analysis."""
    logger.info("analysis_requested", extra={"change_id": change_id})


def build_client(config: SyncConfig) -> RemoteClient:
    """Create the connector for the configured source."""
    if config.source == SOURCE_GITHUB:
        return GitHubClient(
            token=config.github_token.get_secret_value(),
            repo=config.github_repo,
            base_url=config.github_base_url,
            requests_per_hour=config.github_requests_per_hour,
            burst_size=config.github_burst,
            min_remaining=config.github_min_remaining,
        )
    return GerritClient(
        base_url=config.gerrit_base_url,
        project=config.gerrit_project,
        branches=config.gerrit_branches,
        statuses=config.gerrit_statuses,
        username=config.gerrit_username,
        password=config.gerrit_password.get_secret_value(),
    )


def build_runner(
    config: SyncConfig,
    analyze: AnalyzeFn | None = None,
    client: RemoteClient | None = None,
    store: ChangeStore | None = None,
) -> SyncJobRunner:
    """Assemble a SyncJobRunner and everything behind it.

    Args:
        config: Loaded configuration
        analyze: Async analysis callable (default: log only)
        client: Pre-built connector (default: build_client(config))
        store: Pre-opened store (default: config.database_path)
    """
    client = client or build_client(config)
    store = store or ChangeStore(config.database_path)

    fetcher = ChangeFetcher(
        client,
        page_size=config.sync_page_size,
        max_pages=config.sync_max_pages,
        default_window=timedelta(days=config.sync_default_window_days),
        safety_window=timedelta(minutes=config.sync_safety_window_minutes),
    )
    analysis = AnalysisRetrier(
        analyze or log_analysis,
        max_retries=config.analysis_max_retries,
        base_backoff=config.analysis_base_backoff_seconds,
        timeout=config.analysis_timeout_seconds,
    )
    coordinator = SyncCoordinator(
        store=store,
        client=client,
        fetcher=fetcher,
        diff_policy=DiffPolicy(
            max_size_bytes=config.diff_max_size_bytes,
            exclude_paths=config.diff_exclude_paths,
            exclude_patterns=config.diff_exclude_patterns,
        ),
        tracker=StateTracker(store),
        analysis=analysis,
    )
    update_checks = UpdateCheckService(
        store,
        fetcher,
        client,
        ttl_seconds=config.update_check_ttl_seconds,
        page_size=config.update_check_page_size,
        window_days=config.sync_default_window_days,
    )
    logger.info(
        "service_configured",
        extra={
            "source": config.source,
            "repository": config.repository_name,
            "database_path": str(config.database_path),
            "max_concurrency": config.sync_max_concurrency,
        },
    )
    return SyncJobRunner(
        coordinator,
        ConcurrencyGate(config.sync_max_concurrency),
        store,
        update_checks=update_checks,
        sync_timeout=config.sync_timeout_seconds,
        full_sync_timeout=config.sync_full_timeout_seconds,
    )
