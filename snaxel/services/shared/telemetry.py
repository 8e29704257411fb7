"""Shared telemetry module for Snaxel services.

Prometheus metrics for the aggregation layer plus a decorator that records
latency and outcome of request handlers.
"""

import functools
import time
from typing import Any, Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram

METRICS_REGISTRY = CollectorRegistry()

cache_lookups = Counter(
    "snaxel_cache_lookups_total",
    "Result cache lookups",
    ["result"],
    registry=METRICS_REGISTRY,
)

source_lookups = Counter(
    "snaxel_source_lookups_total",
    "Per-source provider lookups",
    ["source", "status"],
    registry=METRICS_REGISTRY,
)

source_latency = Histogram(
    "snaxel_source_latency_seconds",
    "Per-source provider lookup latency in seconds",
    ["source"],
    registry=METRICS_REGISTRY,
)

request_count = Counter(
    "snaxel_requests_total",
    "Total search requests",
    ["endpoint", "status"],
    registry=METRICS_REGISTRY,
)

request_latency = Histogram(
    "snaxel_request_latency_seconds",
    "Search request latency in seconds",
    ["endpoint"],
    registry=METRICS_REGISTRY,
)


def record_cache_lookup(hit: bool) -> None:
    cache_lookups.labels(result="hit" if hit else "miss").inc()


def record_source_lookup(source: str, status: str, duration: Optional[float] = None) -> None:
    """Count one provider lookup; `status` is 'success' or a failure kind."""
    source_lookups.labels(source=source, status=status).inc()
    if duration is not None:
        source_latency.labels(source=source).observe(duration)


def track_request(endpoint: Optional[str] = None) -> Callable:
    """Decorator recording latency and outcome of a request handler.

    Usage:
        @track_request("search")
        def search(payload):
            ...
    """
    def decorator(func: Callable) -> Callable:
        name = endpoint or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            start_time = time.time()
            status = "success"
            try:
                return func(*args, **kwargs)
            except Exception:
                status = "error"
                raise
            finally:
                request_latency.labels(endpoint=name).observe(time.time() - start_time)
                request_count.labels(endpoint=name, status=status).inc()

        return wrapper
    return decorator
