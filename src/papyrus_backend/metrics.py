"""
Prometheus metrics shared by the API and the workers.

Metrics live in the default ``prometheus_client`` registry; the API exposes
them on ``GET /metrics``.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

QUEUE_TIME = Histogram(
    "papyrus_queue_time_seconds",
    "Time a message waited in its queue before being received",
    labelnames=("queue",),
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
GENERATION_DURATION = Histogram(
    "papyrus_generation_duration_seconds",
    "Wall time spent rendering one document",
    labelnames=("document_type",),
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 30, 60),
)
STAGE_FAILURES = Counter(
    "papyrus_stage_failures_total",
    "Stage handler failures",
    labelnames=("stage", "kind"),
)
ADMISSION_DENIALS = Counter(
    "papyrus_admission_denials_total",
    "Requests rejected by admission control",
    labelnames=("reason",),
)
STORE_OUTAGES = Counter(
    "papyrus_backing_store_unavailable_total",
    "Operations that failed because a backing store was unreachable",
    labelnames=("store",),
)
POOL_IN_USE = Gauge(
    "papyrus_render_pool_in_use",
    "Render contexts currently checked out",
)
JOBS_SUBMITTED = Counter(
    "papyrus_jobs_submitted_total",
    "Accepted submissions",
    labelnames=("replayed",),
)


def render_latest() -> tuple[bytes, str]:
    """Current metrics in the Prometheus text format, with its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
