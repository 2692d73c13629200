"""
Prometheus metrics definitions for reviewsync.

Defines Counter, Gauge and Histogram metrics for monitoring sync passes,
per-change outcomes, gate admission, update-check caching and background
analysis retries.

Naming conventions: snake_case, reviewsync_ prefix.
"""

from prometheus_client import Counter, Gauge, Histogram

# ==============================================================================
# COUNTERS - Monotonically increasing values
# ==============================================================================

sync_passes_total = Counter(
    "reviewsync_sync_passes_total",
    "Total sync passes",
    ["mode", "status"],
    # mode: incremental, full, single
    # status: success, failed
)

changes_processed_total = Counter(
    "reviewsync_changes_processed_total",
    "Changes seen by sync passes",
    ["outcome"],
    # outcome: created, updated, unchanged, error
)

subresource_fetches_total = Counter(
    "reviewsync_subresource_fetches_total",
    "Sub-resource fetches performed for changed entities",
    ["kind"],
    # kind: detail, files, diff, comments
)

status_transitions_total = Counter(
    "reviewsync_status_transitions_total",
    "Observed status transitions",
    ["previous", "current"],
)

gate_rejections_total = Counter(
    "reviewsync_gate_rejections_total",
    "Sync requests rejected because the gate was full",
    ["kind"],
    # kind: repository, change
)

update_checks_total = Counter(
    "reviewsync_update_checks_total",
    "Update-check lookups by cache outcome",
    ["scope", "outcome"],
    # scope: dashboard, change
    # outcome: hit, miss, stale, default
)

analysis_attempts_total = Counter(
    "reviewsync_analysis_attempts_total",
    "Background analysis attempts",
    ["status"],
    # status: success, failed, timeout, exhausted
)

# ==============================================================================
# GAUGES - Point-in-time values (can go up or down)
# ==============================================================================

sync_jobs_in_flight = Gauge(
    "reviewsync_sync_jobs_in_flight",
    "Sync jobs currently holding a gate slot",
)

# ==============================================================================
# HISTOGRAMS - Distributions of observed values
# ==============================================================================

sync_duration_seconds = Histogram(
    "reviewsync_sync_duration_seconds",
    "Wall-clock duration of sync passes",
    ["mode"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 900],
)
