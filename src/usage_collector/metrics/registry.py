"""
Metrics for the usage output.

Components record through the MetricsSink protocol. PrometheusMetrics owns
its own CollectorRegistry so several outputs (and tests) never collide on
the process-global registry.
"""

from __future__ import annotations

from typing import Optional, Protocol

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class MetricsSink(Protocol):
    def events_received(self, n: int = 1) -> None: ...

    def events_sent(self, n: int) -> None: ...

    def batch_sent(self) -> None: ...

    def batch_send_error(self, kind: str) -> None: ...

    def batch_dead_lettered(self, kind: str, events: int) -> None: ...

    def in_flight(self, n: int) -> None: ...

    def delivery_latency(self, seconds: float) -> None: ...


class NullMetrics:
    """Discards everything."""

    def events_received(self, n: int = 1) -> None:
        pass

    def events_sent(self, n: int) -> None:
        pass

    def batch_sent(self) -> None:
        pass

    def batch_send_error(self, kind: str) -> None:
        pass

    def batch_dead_lettered(self, kind: str, events: int) -> None:
        pass

    def in_flight(self, n: int) -> None:
        pass

    def delivery_latency(self, seconds: float) -> None:
        pass


class PrometheusMetrics:
    """Prometheus-backed metrics sink.

    Example:
        metrics = PrometheusMetrics()
        output = UsageOutput(settings, metrics=metrics)
        app = create_app(output, metrics.registry)   # serves /metrics
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "collector"):
        self.registry = registry or CollectorRegistry()

        self.events_received_total = Counter(
            "events_received_total",
            "Events accepted from the upstream pipeline",
            namespace=namespace,
            registry=self.registry,
        )
        self.events_sent_total = Counter(
            "events_sent_total",
            "Events delivered to the ingestion API",
            namespace=namespace,
            registry=self.registry,
        )
        self.batches_sent_total = Counter(
            "batches_sent_total",
            "Batches delivered to the ingestion API",
            namespace=namespace,
            registry=self.registry,
        )
        self.batch_send_errors_total = Counter(
            "batch_send_errors_total",
            "Failed delivery attempts by outcome",
            ["kind"],
            namespace=namespace,
            registry=self.registry,
        )
        self.batches_dead_lettered_total = Counter(
            "batches_dead_lettered_total",
            "Batches handed to the dead-letter sink",
            ["kind"],
            namespace=namespace,
            registry=self.registry,
        )
        self.events_dead_lettered_total = Counter(
            "events_dead_lettered_total",
            "Events handed to the dead-letter sink",
            namespace=namespace,
            registry=self.registry,
        )
        self.in_flight_batches = Gauge(
            "in_flight_batches",
            "Batches between sealing and a terminal state",
            namespace=namespace,
            registry=self.registry,
        )
        self.delivery_latency_seconds = Histogram(
            "delivery_latency_seconds",
            "Latency of a single POST to the ingestion API",
            namespace=namespace,
            registry=self.registry,
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
        )

    def events_received(self, n: int = 1) -> None:
        self.events_received_total.inc(n)

    def events_sent(self, n: int) -> None:
        self.events_sent_total.inc(n)

    def batch_sent(self) -> None:
        self.batches_sent_total.inc()

    def batch_send_error(self, kind: str) -> None:
        self.batch_send_errors_total.labels(kind=kind).inc()

    def batch_dead_lettered(self, kind: str, events: int) -> None:
        self.batches_dead_lettered_total.labels(kind=kind).inc()
        self.events_dead_lettered_total.inc(events)

    def in_flight(self, n: int) -> None:
        self.in_flight_batches.set(n)

    def delivery_latency(self, seconds: float) -> None:
        self.delivery_latency_seconds.observe(seconds)
