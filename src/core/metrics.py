"""
Prometheus Metrics for Observability

Tracks stage latency, run outcomes and error reporting.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

import asyncio
import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Runs by terminal outcome
pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Total number of pipeline runs by outcome",
    labelnames=["outcome"]
)

# Active Runs
active_runs_gauge = Gauge(
    "pipeline_active_runs",
    "Number of pipeline runs currently in flight"
)

fetched_bytes_total = Counter(
    "pipeline_fetched_bytes_total",
    "Total bytes read by the fetch stage"
)

failures_reported_total = Counter(
    "pipeline_failures_reported_total",
    "Failures delivered to a scope failure handler",
    labelnames=["stage"]
)

error_indicator_shown_total = Counter(
    "screen_error_indicator_shown_total",
    "Times a screen error indicator was made visible",
    labelnames=["locale"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "snowy_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("fetch"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except asyncio.CancelledError:
        status = "cancelled"
        raise
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_run_started():
    active_runs_gauge.inc()


def record_run_finished(outcome: str):
    """Record a run reaching a terminal state (done, failed, cancelled)."""
    pipeline_runs_total.labels(outcome=outcome).inc()
    active_runs_gauge.dec()


def record_failure_reported(stage: str = "unknown"):
    failures_reported_total.labels(stage=stage).inc()


def record_error_indicator_shown(locale: str):
    error_indicator_shown_total.labels(locale=locale).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
