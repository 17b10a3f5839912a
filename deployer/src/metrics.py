from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the deployer on ``/metrics``.

    Notification counters carry a ``kind`` label so a noisy watch (for
    example Secret churn in a shared namespace) is visible on its own.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "storage_deployer_reconcile_total",
            "Total reconciliation passes by outcome",
            ["outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "storage_deployer_reconcile_errors_total",
            "Total reconciliation passes that ended in an error",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "storage_deployer_reconcile_duration_seconds",
            "Seconds spent inside a single reconciliation pass",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "storage_deployer_queue_depth",
            "Current number of work items waiting for the execution slot",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "storage_deployer_retry_total",
            "Total work items re-enqueued with backoff after a failed pass",
        )
    )
    dropped_work_items_total: Counter = field(
        default_factory=lambda: Counter(
            "storage_deployer_dropped_work_items_total",
            "Total queued work items dropped on shutdown",
        )
    )
    notifications_admitted_total: Counter = field(
        default_factory=lambda: Counter(
            "storage_deployer_notifications_admitted_total",
            "Total watch notifications that produced a work item",
            ["kind"],
        )
    )
    notifications_suppressed_total: Counter = field(
        default_factory=lambda: Counter(
            "storage_deployer_notifications_suppressed_total",
            "Total watch notifications rejected by the admission filter",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "storage_deployer_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "storage_deployer_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "storage_deployer",
            "Build information for the deployer",
        )
    )


METRICS = ControllerMetrics()
