"""
Prometheus metrics for the approval delegation engine.

Provides observability into event store traffic, command latency, grant
lifecycle counts and the expiry sweep.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ============================================================================
# Core Event Store Metrics
# ============================================================================

events_appended_total = Counter(
    "apdel_events_appended_total",
    "Total number of events appended to the event store",
    ["stream_type", "event_type"],
)

events_loaded_total = Counter(
    "apdel_events_loaded_total",
    "Total number of events loaded from the event store",
    ["stream_type"],
)

stream_version_conflicts_total = Counter(
    "apdel_stream_version_conflicts_total",
    "Total number of optimistic locking version conflicts",
    ["stream_type"],
)

# ============================================================================
# Command Processing Metrics
# ============================================================================

command_duration_seconds = Histogram(
    "apdel_command_duration_seconds",
    "Duration of command processing in seconds",
    ["command_type"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

commands_processed_total = Counter(
    "apdel_commands_processed_total",
    "Total number of commands processed",
    ["command_type", "status"],  # status: success, failure
)

# ============================================================================
# Delegation Metrics
# ============================================================================

grants_by_status = Gauge(
    "apdel_grants_by_status",
    "Number of delegation grants by derived status",
    ["status"],
)

proxy_approvals_total = Counter(
    "apdel_proxy_approvals_total",
    "Total number of proxy approvals recorded",
    ["action", "category"],
)

limits_validations_total = Counter(
    "apdel_limits_validations_total",
    "Total number of limits validations by outcome",
    ["result"],  # result: valid, invalid
)

conflicts_detected_total = Counter(
    "apdel_conflicts_detected_total",
    "Total number of overlapping grants reported by conflict detection",
)

# ============================================================================
# System Metrics
# ============================================================================

projection_rebuild_duration_seconds = Histogram(
    "apdel_projection_rebuild_duration_seconds",
    "Duration of projection rebuild in seconds",
    ["projection_name"],
    buckets=(0.01, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

sweep_duration_seconds = Histogram(
    "apdel_sweep_duration_seconds",
    "Duration of an expiry sweep in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

grants_expired_total = Counter(
    "apdel_grants_expired_total",
    "Total number of grants transitioned to Expired by the sweep",
)

sweep_failures_total = Counter(
    "apdel_sweep_failures_total",
    "Total number of grants the sweep failed to expire",
)

# ============================================================================
# Helper Functions
# ============================================================================

P = ParamSpec("P")
R = TypeVar("R")


def track_command_duration(command_type: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator to track command processing duration.

    Args:
        command_type: Type of command being processed

    Returns:
        Decorated function that tracks duration
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            status = "success"
            try:
                return func(*args, **kwargs)
            except Exception:
                status = "failure"
                raise
            finally:
                duration = time.perf_counter() - start
                command_duration_seconds.labels(command_type=command_type).observe(duration)
                commands_processed_total.labels(
                    command_type=command_type, status=status
                ).inc()

        return wrapper

    return decorator


def start_metrics_server(port: int = 9090) -> None:
    """
    Start Prometheus metrics HTTP server.

    Args:
        port: Port to listen on (default: 9090)
    """
    start_http_server(port)


def update_grant_status_metrics(counts: dict[str, int]) -> None:
    """
    Publish the current grant count per derived status.

    Args:
        counts: Mapping of status value ("active", "scheduled", ...) to count
    """
    for status, count in counts.items():
        grants_by_status.labels(status=status).set(count)
