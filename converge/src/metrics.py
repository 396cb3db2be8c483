from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Work queue series carry a ``queue`` label so several controllers in one
    process can be told apart; reconcile series carry ``controller``.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_events_total",
            "Change stream notifications applied to the resource cache",
            ["controller", "type"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_reconcile_total",
            "Reconcile attempts by outcome",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "converge_reconcile_duration_seconds",
            "Seconds spent inside the reconcile function",
            ["controller"],
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_dropped_keys_total",
            "Keys dropped after exhausting their retry budget",
            ["controller"],
        )
    )
    worker_crashes_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_worker_crashes_total",
            "Unexpected worker loop crashes that required a restart",
            ["controller"],
        )
    )
    active_workers: Gauge = field(
        default_factory=lambda: Gauge(
            "converge_active_workers",
            "Workers currently holding a key in flight",
            ["controller"],
        )
    )
    dispatcher_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_dispatcher_errors_total",
            "Change notifications the dispatcher could not apply",
            ["controller"],
        )
    )
    stream_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_stream_errors_total",
            "Total list/watch errors from the change stream",
        )
    )
    stream_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_stream_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    stream_relists_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_stream_relists_total",
            "Total full re-lists after the watch resource version expired",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "converge_workqueue_depth",
            "Keys ready for processing",
            ["queue"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_workqueue_adds_total",
            "Keys accepted into the ready queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_workqueue_retries_total",
            "Rate-limited re-adds after failed processing",
            ["queue"],
        )
    )
    queue_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "converge_workqueue_queue_duration_seconds",
            "Seconds a key waits in the ready queue before a worker takes it",
            ["queue"],
            buckets=(0.001, 0.01, 0.1, 0.5, 1, 5, 10, 60, float("inf")),
        )
    )
    work_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "converge_workqueue_work_duration_seconds",
            "Seconds a key is held in flight by a worker",
            ["queue"],
            buckets=(0.001, 0.01, 0.1, 0.5, 1, 5, 10, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "converge",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
