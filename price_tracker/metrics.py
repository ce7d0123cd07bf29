"""Prometheus metrics for the price collector."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("price_tracker", "Price tracker collector info")
app_info.info({"version": "0.1.0", "name": "price-tracker"})

# Extraction metrics
collection_attempts_total = Counter(
    "collection_attempts_total",
    "Total number of collection attempts by extraction method and outcome",
    ["method", "status"],
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Time spent in a single extraction stage",
    ["method"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

blocked_pages_total = Counter(
    "blocked_pages_total",
    "Total number of pages classified as anti-bot challenges",
    ["reason"],
)

vision_guardrail_rejections_total = Counter(
    "vision_guardrail_rejections_total",
    "Vision results rejected by the guardrail",
    ["reason"],
)

# Job metrics
collection_jobs_claimed_total = Counter(
    "collection_jobs_claimed_total",
    "Total number of collection jobs claimed by this process",
)

collection_jobs_completed_total = Counter(
    "collection_jobs_completed_total",
    "Total number of collection jobs transitioned out of the leased state",
    ["state"],
)

# Collector loop metrics
collector_poll_cycles_total = Counter(
    "collector_poll_cycles_total",
    "Total number of collector poll cycles",
    ["status"],
)

collector_last_poll_timestamp = Gauge(
    "collector_last_poll_timestamp",
    "Timestamp of the last collector poll cycle",
)


def record_stage(method: str, duration: float):
    """Record the duration of one extraction stage."""
    extraction_duration_seconds.labels(method=method).observe(duration)


def record_blocked(reason: str | None):
    """Record a blocked page classification."""
    blocked_pages_total.labels(reason=reason or "unknown").inc()


def record_guardrail_rejection(reason: str):
    """Record a vision guardrail rejection (reason prefix only)."""
    vision_guardrail_rejections_total.labels(reason=reason.split(":", 1)[0]).inc()


def record_attempt(method: str, status: str):
    """Record a written collection attempt."""
    collection_attempts_total.labels(method=method, status=status).inc()


def record_jobs_claimed(count: int):
    """Record claimed jobs."""
    if count:
        collection_jobs_claimed_total.inc(count)


def record_job_completed(state: str):
    """Record a job state transition."""
    collection_jobs_completed_total.labels(state=state).inc()


def record_poll_cycle(status: str):
    """Record a collector poll cycle."""
    collector_poll_cycles_total.labels(status=status).inc()
    collector_last_poll_timestamp.set(time.time())
