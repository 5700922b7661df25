from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue metrics carry a ``name`` label so several queues in one process stay
    distinguishable.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "reconciler_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["name"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_workqueue_adds_total",
            "Total keys accepted by the work queue",
            ["name"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_workqueue_retries_total",
            "Total rate-limited requeues",
            ["name"],
        )
    )
    queue_dropped_delayed_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_workqueue_dropped_delayed_total",
            "Total delayed requeues discarded on shutdown",
            ["name"],
        )
    )
    queue_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "reconciler_workqueue_queue_duration_seconds",
            "Seconds a key waits in the queue before a worker picks it up",
            ["name"],
            buckets=(0.001, 0.01, 0.1, 0.5, 1, 5, 10, 60, float("inf")),
        )
    )
    work_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "reconciler_workqueue_work_duration_seconds",
            "Seconds between a worker taking a key and marking it done",
            ["name"],
            buckets=(0.001, 0.01, 0.1, 0.5, 1, 5, 10, 60, float("inf")),
        )
    )
    unfinished_work: Gauge = field(
        default_factory=lambda: Gauge(
            "reconciler_workqueue_unfinished_work",
            "Number of keys currently being processed",
            ["name"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_reconcile_total",
            "Total reconcile attempts by outcome",
            ["outcome"],
        )
    )
    reconcile_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_reconcile_dropped_total",
            "Total keys dropped after exceeding the retry limit or failing to parse",
            ["reason"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_events_total",
            "Total resource notifications translated into queue keys",
            ["event"],
        )
    )
    events_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_events_dropped_total",
            "Total resource notifications dropped because no key could be derived",
            ["event"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_relists_total",
            "Total full re-lists after the initial listing",
        )
    )
    cached_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "reconciler_cached_objects",
            "Current number of objects in the local cache",
        )
    )
    controller_state: Gauge = field(
        default_factory=lambda: Gauge(
            "reconciler_controller_state",
            "Lifecycle state of the controller (1 for the current state)",
            ["state"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "reconciler",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
