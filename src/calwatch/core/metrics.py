"""Prometheus metrics for the calendar sync engine.

Metrics exported:
- calwatch_reconcile_passes_total: reconciliation passes by mode and status
- calwatch_notifications_sent_total: notifications handed to the sink
- calwatch_watch_operations_total: subscribe/renew/stop calls by status
- calwatch_provider_errors_total: provider and store failures by error type
- calwatch_scheduler_tick_seconds: wall time of one scheduler tick
- calwatch_connected_users: users in the connected-user registry
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

reconcile_passes_total = Counter(
    "calwatch_reconcile_passes_total",
    "Total number of reconciliation passes",
    labelnames=["mode", "status"],
)

notifications_sent_total = Counter(
    "calwatch_notifications_sent_total",
    "Total number of notifications handed to the sink",
    labelnames=["kind", "status"],
)

watch_operations_total = Counter(
    "calwatch_watch_operations_total",
    "Total number of watch channel operations",
    labelnames=["operation", "status"],
)

provider_errors_total = Counter(
    "calwatch_provider_errors_total",
    "Total number of errors by type",
    labelnames=["error_type", "operation"],
)

scheduler_tick_seconds = Histogram(
    "calwatch_scheduler_tick_seconds",
    "Wall time of one scheduler tick across all users",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

connected_users = Gauge(
    "calwatch_connected_users",
    "Number of users in the connected-user registry",
)


class EngineMetrics:
    """Thin wrapper so call sites do not repeat label names."""

    def record_reconcile(self, mode: str, status: str) -> None:
        reconcile_passes_total.labels(mode=mode, status=status).inc()

    def record_notification(self, kind: str, status: str) -> None:
        notifications_sent_total.labels(kind=kind, status=status).inc()

    def record_watch(self, operation: str, status: str) -> None:
        watch_operations_total.labels(operation=operation, status=status).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        provider_errors_total.labels(error_type=error_type, operation=operation).inc()

    def observe_tick(self, seconds: float) -> None:
        scheduler_tick_seconds.observe(seconds)

    def set_connected_users(self, count: int) -> None:
        connected_users.set(count)
