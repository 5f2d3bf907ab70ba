"""
Prometheus metrics for the RBAC engine
"""

import time
from functools import wraps
from typing import Callable

from prometheus_client import CollectorRegistry, Counter, Histogram
from prometheus_client.exposition import generate_latest

# Create a custom registry
metrics_registry = CollectorRegistry()

# Authorization checks
authz_checks_total = Counter(
    "authz_checks_total",
    "Total authorization checks",
    ["check", "result"],
    registry=metrics_registry
)

authz_check_errors_total = Counter(
    "authz_check_errors_total",
    "Authorization checks that failed closed because of an error",
    ["error_type"],
    registry=metrics_registry
)

# Snapshot cache
snapshot_cache_events_total = Counter(
    "snapshot_cache_events_total",
    "Snapshot cache lookups and refreshes",
    ["event"],
    registry=metrics_registry
)

snapshot_invalidations_total = Counter(
    "snapshot_invalidations_total",
    "Snapshot invalidations",
    ["scope"],
    registry=metrics_registry
)

# Resolution
permission_resolution_seconds = Histogram(
    "permission_resolution_seconds",
    "Time spent resolving a user's permissions from the stores",
    buckets=(.001, .0025, .005, .01, .025, .05, .1, .25, .5, 1.0),
    registry=metrics_registry
)


def track_resolution(func: Callable):
    """Decorator to time permission resolution"""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            permission_resolution_seconds.observe(time.perf_counter() - start_time)
    return wrapper


def get_metrics() -> bytes:
    """Generate Prometheus metrics exposition format"""
    return generate_latest(metrics_registry)
