from .registry import MetricsSink, NullMetrics, PrometheusMetrics

__all__ = ["MetricsSink", "NullMetrics", "PrometheusMetrics"]
