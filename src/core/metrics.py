"""
Prometheus Metrics for Observability

Tracks request latency, background removal outcomes and temp file hygiene.
Exposes /api/metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Latency per request stage (persist, rembg, ...)
stage_latency_seconds = Histogram(
    "remover_stage_latency_seconds",
    "Time spent in each request stage",
    labelnames=["stage", "status"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Background removal outcomes
removals_total = Counter(
    "remover_removals_total",
    "Total number of background removal attempts",
    labelnames=["status", "output_format"]
)

# Uploads rejected before persistence
upload_rejections_total = Counter(
    "remover_upload_rejections_total",
    "Uploads rejected during validation",
    labelnames=["reason"]
)

# Temp files that could not be deleted
temp_cleanup_failures_total = Counter(
    "remover_temp_cleanup_failures_total",
    "Temp upload files that could not be deleted"
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
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Application Info
app_info = Info(
    "remover_app",
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
        with track_stage_latency("rembg"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        stage_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_removal(status: str, output_format: str):
    """Record a background removal outcome."""
    removals_total.labels(status=status, output_format=output_format).inc()


def record_upload_rejection(reason: str):
    """Record an upload rejected before persistence."""
    upload_rejections_total.labels(reason=reason).inc()


def record_cleanup_failure():
    temp_cleanup_failures_total.inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
