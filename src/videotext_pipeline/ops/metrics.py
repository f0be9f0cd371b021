from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

REGISTRY = CollectorRegistry()

# Latency buckets (seconds) for media transforms, from sub-second fixes to long transcriptions.
JOB_BUCKETS = (
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1200.0,
    1800.0,
    2700.0,
)

# Admission
admission_rejected = Counter(
    "videotext_admission_rejected_total",
    "Submissions rejected before queueing",
    labelnames=("reason",),
    registry=REGISTRY,
)

# Jobs
jobs_queued = Counter(
    "videotext_jobs_queued_total", "Jobs queued", labelnames=("lane",), registry=REGISTRY
)
jobs_finished = Counter(
    "videotext_jobs_finished_total",
    "Jobs finished by final state",
    labelnames=("state",),
    registry=REGISTRY,
)
job_retries = Counter(
    "videotext_job_retries_total", "Attempts re-queued", labelnames=("kind",), registry=REGISTRY
)
job_kills = Counter(
    "videotext_job_kills_total",
    "Attempts aborted by a supervisor",
    labelnames=("reason",),
    registry=REGISTRY,
)
queue_depth = Gauge(
    "videotext_queue_depth", "Waiting plus active jobs", registry=REGISTRY
)
job_seconds = Histogram(
    "videotext_job_seconds",
    "Attempt wall-clock seconds by tool",
    labelnames=("tool",),
    registry=REGISTRY,
    buckets=JOB_BUCKETS,
)

# Best-effort collaborators
cache_lookups = Counter(
    "videotext_cache_lookups_total", "Dedup cache lookups", labelnames=("outcome",), registry=REGISTRY
)
partial_writes = Counter(
    "videotext_partial_writes_total", "Partial-result snapshots written", registry=REGISTRY
)
webhook_deliveries = Counter(
    "videotext_webhook_deliveries_total",
    "Webhook POSTs by outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)


@contextmanager
def time_hist(h: Histogram) -> Iterator[Callable[[], float]]:
    """
    Context manager to time a block and observe into a histogram.
    Usage:
        with time_hist(hist.labels(tool="x")) as elapsed:
            ...
        dt = elapsed()
    """
    t0 = time.perf_counter()
    dt: float | None = None

    def elapsed() -> float:
        return float(dt or 0.0)

    try:
        yield elapsed
    finally:
        dt = max(0.0, time.perf_counter() - t0)
        with suppress(Exception):
            h.observe(dt)
