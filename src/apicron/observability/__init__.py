"""Metrics for dispatch, execution and monitoring."""

from .metrics import MetricsRegistry, SchedulerMetrics, get_metrics_registry

__all__ = ["MetricsRegistry", "SchedulerMetrics", "get_metrics_registry"]
