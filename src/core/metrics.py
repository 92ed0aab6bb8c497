"""
Prometheus Metrics for Observability

Tracks upscale latency, tile throughput, model loading and cache usage.
Exposes /metrics endpoint for Prometheus scraping.
"""

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

# Whole operation
upscale_operations_total = Counter(
    "upscale_operations_total",
    "Total number of upscale operations",
    labelnames=["status"]
)

upscale_operation_duration_seconds = Histogram(
    "upscale_operation_duration_seconds",
    "Time for a complete tiled upscale",
    labelnames=["status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

upscale_active_operations = Gauge(
    "upscale_active_operations",
    "Number of upscale operations currently in flight"
)

# Per tile
upscale_tile_latency_seconds = Histogram(
    "upscale_tile_latency_seconds",
    "Forward pass latency for one tile",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

upscale_tiles_total = Counter(
    "upscale_tiles_total",
    "Total number of tiles inferred"
)

# Model loading
model_load_seconds = Histogram(
    "model_load_seconds",
    "Time to create an inference session",
    labelnames=["backend"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0]
)

model_cache_hits_total = Counter(
    "model_cache_hits_total",
    "Model weights served from the local cache"
)

model_cache_misses_total = Counter(
    "model_cache_misses_total",
    "Model weights fetched remotely"
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
    "upscaler_app",
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
def track_operation(status_holder: dict):
    """
    Track one upscale operation.

    The caller writes the final status into ``status_holder["status"]``;
    an escaping exception records "error" unless a status was already set.

    Usage:
        outcome = {}
        with track_operation(outcome):
            ...
            outcome["status"] = "completed"
    """
    start = time.time()
    upscale_active_operations.inc()
    try:
        yield status_holder
    except Exception:
        status_holder.setdefault("status", "error")
        raise
    finally:
        status = status_holder.get("status", "error")
        upscale_active_operations.dec()
        upscale_operations_total.labels(status=status).inc()
        upscale_operation_duration_seconds.labels(status=status).observe(time.time() - start)


def record_tile(latency_seconds: float):
    """Record one tile forward pass."""
    upscale_tiles_total.inc()
    upscale_tile_latency_seconds.observe(latency_seconds)


def record_model_load_time(backend: str, load_time_seconds: float):
    """Record session creation time for the selected backend."""
    model_load_seconds.labels(backend=backend).observe(load_time_seconds)


def record_model_cache_hit():
    model_cache_hits_total.inc()


def record_model_cache_miss():
    model_cache_misses_total.inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
