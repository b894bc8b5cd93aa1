from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class PlacementMetrics:
    """Prometheus metrics registry for the placement engine."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.ledger_operations = Counter(
            "placement_ledger_operations_total",
            "Capacity ledger writes grouped by operation and outcome.",
            labelnames=("operation", "outcome"),
            registry=self.registry,
        )
        self.ledger_retries = Counter(
            "placement_ledger_retry_total",
            "Optimistic-concurrency retries performed by the ledger.",
            labelnames=("operation",),
            registry=self.registry,
        )
        self.ledger_exhaustions = Counter(
            "placement_ledger_exhaustion_total",
            "Ledger writes that exhausted their retry budget.",
            labelnames=("operation",),
            registry=self.registry,
        )
        self.halted_windows = Gauge(
            "placement_halted_windows",
            "Capacity windows halted after an invariant violation.",
            registry=self.registry,
        )
        self.execution_outcomes = Counter(
            "placement_execution_outcomes_total",
            "Assignment execution results by mode and outcome.",
            labelnames=("mode", "outcome"),
            registry=self.registry,
        )
        self.suggestion_duration = Histogram(
            "placement_suggestion_duration_seconds",
            "Time spent generating suggestions for one batch.",
            registry=self.registry,
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
        )
        self.db_query_duration = Histogram(
            "placement_db_query_duration_seconds",
            "Database statement duration.",
            registry=self.registry,
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5),
        )
        self.outbox_dispatch = Counter(
            "placement_outbox_dispatch_total",
            "Notification outbox relay results.",
            labelnames=("status",),
            registry=self.registry,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)


__all__ = ["PlacementMetrics"]
