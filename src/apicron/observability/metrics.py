"""Prometheus-style counters and gauges for the scheduler.

The dispatcher counts ticks and submissions, the worker counts attempt
outcomes, and the monitor publishes the fleet summary as gauges. A
registry collects them and renders Prometheus text exposition.

Example:
    >>> registry = MetricsRegistry()
    >>> metrics = SchedulerMetrics(registry)
    >>> metrics.executions.labels(outcome="succeeded").inc()
    >>> metrics.schedules.labels(state="failed").set(2)
    >>> print(registry.export_prometheus())
    apicron_executions_total{outcome="succeeded"} 1.0
    apicron_schedules{state="failed"} 2.0
"""

from __future__ import annotations

import threading
from typing import Any

LabelKey = tuple[tuple[str, str], ...]


def _key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


class _Metric:
    """Shared storage for labelled float values."""

    kind = "untyped"

    def __init__(self, name: str, description: str = "", labels: list[str] | None = None):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._values: dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _add(self, key: LabelKey, delta: float) -> None:
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + delta

    def _put(self, key: LabelKey, value: float) -> None:
        with self._lock:
            self._values[key] = value

    def _read(self, key: LabelKey) -> float:
        with self._lock:
            return self._values.get(key, 0.0)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": self.kind, "labels": dict(key), "value": value}
                for key, value in self._values.items()
            ]


class Counter(_Metric):
    """Monotonically increasing value."""

    kind = "counter"

    def labels(self, **labels: str) -> _CounterChild:
        return _CounterChild(self, _key(labels))

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)

    @property
    def value(self) -> float:
        return self._read(())


class _CounterChild:
    def __init__(self, parent: Counter, key: LabelKey):
        self._parent = parent
        self._key = key

    def inc(self, value: float = 1.0) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        self._parent._add(self._key, value)

    @property
    def value(self) -> float:
        return self._parent._read(self._key)


class Gauge(_Metric):
    """Value that can go up or down."""

    kind = "gauge"

    def labels(self, **labels: str) -> _GaugeChild:
        return _GaugeChild(self, _key(labels))

    def set(self, value: float) -> None:
        self.labels().set(value)

    @property
    def value(self) -> float:
        return self._read(())


class _GaugeChild:
    def __init__(self, parent: Gauge, key: LabelKey):
        self._parent = parent
        self._key = key

    def set(self, value: float) -> None:
        self._parent._put(self._key, float(value))

    def inc(self, value: float = 1.0) -> None:
        self._parent._add(self._key, value)

    def dec(self, value: float = 1.0) -> None:
        self._parent._add(self._key, -value)

    @property
    def value(self) -> float:
        return self._parent._read(self._key)


class MetricsRegistry:
    """Registry of all metrics for collection and export."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls: type[_Metric], name: str, description: str, labels: list[str] | None):
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = cls(name, description, labels)
                self._metrics[name] = metric
            elif not isinstance(metric, cls):
                raise ValueError(f"metric {name!r} already registered as {metric.kind}")
            return metric

    def counter(self, name: str, description: str = "", labels: list[str] | None = None) -> Counter:
        return self._get_or_create(Counter, name, description, labels)

    def gauge(self, name: str, description: str = "", labels: list[str] | None = None) -> Gauge:
        return self._get_or_create(Gauge, name, description, labels)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics.values())
        results: list[dict[str, Any]] = []
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for data in self.collect():
            labels = data["labels"]
            label_str = ""
            if labels:
                label_str = "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"
            lines.append(f"{data['name']}{label_str} {data['value']}")
        return "\n".join(lines)


_default_registry = MetricsRegistry()


def get_metrics_registry() -> MetricsRegistry:
    """Get the process-wide registry."""
    return _default_registry


class SchedulerMetrics:
    """Pre-defined metrics for dispatch, execution and monitoring."""

    def __init__(self, registry: MetricsRegistry | None = None):
        reg = registry or _default_registry
        self.registry = reg

        self.dispatch_ticks = reg.counter(
            "apicron_dispatch_ticks_total",
            "Dispatcher ticks run",
        )
        self.dispatched = reg.counter(
            "apicron_schedules_dispatched_total",
            "Execution tasks submitted by the dispatcher",
        )
        self.skipped = reg.counter(
            "apicron_schedules_skipped_total",
            "Due schedules not dispatched",
            ["reason"],
        )
        self.executions = reg.counter(
            "apicron_executions_total",
            "Execution attempts by outcome",
            ["outcome"],
        )
        self.schedules = reg.gauge(
            "apicron_schedules",
            "Schedule counts from the last monitor sweep",
            ["state"],
        )
        self.stuck = reg.gauge(
            "apicron_schedules_stuck",
            "Enabled schedules at or above the failure threshold",
        )
        self.stale = reg.gauge(
            "apicron_schedules_stale",
            "Eligible schedules with no run inside the freshness window",
        )
        self.failed_recent = reg.gauge(
            "apicron_schedules_failed_recent",
            "Schedules that entered failed inside the failure window",
        )


__all__ = [
    "Counter",
    "Gauge",
    "MetricsRegistry",
    "SchedulerMetrics",
    "get_metrics_registry",
]
