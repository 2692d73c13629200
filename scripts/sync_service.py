#!/usr/bin/env python3
"""Review sync service, container entrypoint.

Runs periodic incremental syncs through the concurrency gate and exposes
Prometheus metrics. Writes a health file after each accepted sync for
liveness checks.

Usage (Docker):
    CMD ["python3", "scripts/sync_service.py"]

Environment:
    SYNC_SCHEDULER_ENABLED=true   Run periodic syncs (default: true)
    SYNC_INTERVAL_SECONDS=1800    Seconds between sync passes (default: 30 min)
    METRICS_PORT=9102             Prometheus exporter port (0 disables)
    See reviewsync/config.py for all variables.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path

from prometheus_client import start_http_server

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from reviewsync.config import get_config
from reviewsync.jobs import TriggerOutcome
from reviewsync.logging_config import configure_logging
from reviewsync.scheduler import PeriodicScheduler
from reviewsync.service import build_runner

logger = logging.getLogger("reviewsync.service.main")

HEALTH_FILE = Path("/tmp/reviewsync.health")


def write_health_file():
    """Write health file for Docker healthcheck."""
    try:
        HEALTH_FILE.write_text(str(int(time.time())))
    except OSError as e:
        logger.warning("Failed to write health file: %s", e)


class HealthReportingScheduler(PeriodicScheduler):
    def tick(self) -> TriggerOutcome:
        outcome = super().tick()
        if outcome is TriggerOutcome.ACCEPTED:
            write_health_file()
        return outcome


async def serve(config) -> None:
    runner = build_runner(config)
    scheduler = HealthReportingScheduler(
        runner, config.repository_name, config.sync_interval_seconds
    )

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, scheduler.stop)

    logger.info(
        "Review sync service starting (interval=%ds, source=%s, repository=%s)",
        config.sync_interval_seconds,
        config.source,
        config.repository_name,
    )
    try:
        await scheduler.run()
    finally:
        logger.info("Shutdown requested, waiting for running syncs...")
        await runner.wait()
        await runner.coordinator.analysis.shutdown()
        await runner.coordinator.client.close()
        runner.store.close()
    logger.info("Review sync service shut down gracefully")


def main():
    """Main service loop."""
    try:
        config = get_config()
    except Exception as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.log_level, config.log_format)

    if not config.sync_scheduler_enabled:
        logger.error("SYNC_SCHEDULER_ENABLED is not true, exiting")
        sys.exit(1)

    metrics_port = int(os.getenv("METRICS_PORT", "9102"))
    if metrics_port:
        start_http_server(metrics_port)
        logger.info("metrics_exporter_started", extra={"port": metrics_port})

    asyncio.run(serve(config))


if __name__ == "__main__":
    main()
