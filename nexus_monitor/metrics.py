"""
Prometheus metrics for the aggregation and alerting pipeline.
"""

from prometheus_client import Counter, Histogram

BUCKETS_RECOMPUTED = Counter(
    "nexus_buckets_recomputed_total",
    "Monthly sales buckets recomputed",
    ["outcome"],  # written, zeroed, empty, failed
)

ALERTS_CREATED = Counter(
    "nexus_alerts_created_total",
    "Nexus alerts created",
    ["level"],
)

NOTIFICATIONS_DISPATCHED = Counter(
    "nexus_notifications_dispatched_total",
    "Alert notification dispatch attempts",
    ["outcome"],  # sent, failed, skipped
)

PIPELINE_DURATION = Histogram(
    "nexus_pipeline_duration_seconds",
    "Time spent in one pipeline run for a user",
    ["trigger"],  # import, sweep
)
