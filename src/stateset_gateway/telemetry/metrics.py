"""
Metrics collection for stateset-gateway.

A small labelled registry of counters, gauges and histograms. One collector
is owned by the gateway context and injected into every component.
"""

from __future__ import annotations

import logging
import statistics
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

_logger = logging.getLogger("stateset_gateway.telemetry.metrics")

LabelKey = tuple[tuple[str, str], ...]


class MetricType(str, Enum):
    """Types of metrics."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


def _label_key(labels: dict[str, Any]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items() if v is not None))


def _format_labels(key: LabelKey, extra: str = "") -> str:
    parts = [f'{k}="{v}"' for k, v in key]
    if extra:
        parts.append(extra)
    return "{" + ",".join(parts) + "}" if parts else ""


@dataclass
class HistogramBuckets:
    """Histogram bucket configuration (milliseconds)."""

    boundaries: list[float] = field(
        default_factory=lambda: [5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000]
    )

    def get_bucket(self, value: float) -> str:
        """Get bucket label for value."""
        for boundary in self.boundaries:
            if value <= boundary:
                return str(boundary)
        return "+Inf"


@dataclass
class HistogramSnapshot:
    """Snapshot of a histogram series.

    Attributes:
        count: Number of observations
        total: Sum of observations
        samples: Most recent observations used for percentiles
    """

    count: int = 0
    total: float = 0.0
    samples: list[float] = field(default_factory=list)

    @property
    def mean(self) -> float:
        if not self.samples:
            return 0.0
        return statistics.mean(self.samples)

    def percentile(self, p: float) -> float:
        """Get a percentile (0-100) over the retained samples."""
        if not self.samples:
            return 0.0
        if len(self.samples) == 1:
            return self.samples[0]
        ordered = sorted(self.samples)
        index = min(len(ordered) - 1, max(0, round(p / 100 * (len(ordered) - 1))))
        return ordered[index]

    @property
    def p50(self) -> float:
        return self.percentile(50)

    @property
    def p95(self) -> float:
        return self.percentile(95)

    @property
    def p99(self) -> float:
        return self.percentile(99)


class MetricsCollector:
    """Collects labelled counters, gauges and histograms.

    Thread-safe; label values are stringified and order-independent.

    Example:
        >>> collector = MetricsCollector()
        >>> collector.increment("retry_attempt_total", operation="list_orders", error_kind="timeout")
        >>> collector.get_counter("retry_attempt_total", operation="list_orders", error_kind="timeout")
        1.0
    """

    def __init__(
        self,
        histogram_buckets: HistogramBuckets | None = None,
        max_samples: int = 1000,
        namespace: str = "stateset_gateway",
    ) -> None:
        """Initialize collector.

        Args:
            histogram_buckets: Bucket configuration for histograms
            max_samples: Samples retained per histogram series
            namespace: Prefix used by the Prometheus text dump
        """
        self._lock = threading.Lock()
        self._buckets = histogram_buckets or HistogramBuckets()
        self._max_samples = max_samples
        self._namespace = namespace

        self._counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._gauges: dict[str, dict[LabelKey, float]] = defaultdict(dict)
        self._histograms: dict[str, dict[LabelKey, HistogramSnapshot]] = defaultdict(dict)
        self._histogram_buckets: dict[str, dict[LabelKey, dict[str, int]]] = defaultdict(
            lambda: defaultdict(lambda: defaultdict(int))
        )

        self._callbacks: list[Callable[[str, dict[str, Any]], None]] = []

    def increment(self, name: str, value: float = 1.0, **labels: Any) -> None:
        """Increment a counter.

        Args:
            name: Metric name
            value: Amount to add
            **labels: Label values
        """
        key = _label_key(labels)
        with self._lock:
            self._counters[name][key] += value
        self._notify(MetricType.COUNTER.value, {"name": name, "value": value, "labels": labels})

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        """Set a gauge to an absolute value."""
        key = _label_key(labels)
        with self._lock:
            self._gauges[name][key] = value
        self._notify(MetricType.GAUGE.value, {"name": name, "value": value, "labels": labels})

    def observe(self, name: str, value: float, **labels: Any) -> None:
        """Record a histogram observation.

        Args:
            name: Metric name
            value: Observed value (milliseconds for durations)
            **labels: Label values
        """
        key = _label_key(labels)
        with self._lock:
            series = self._histograms[name].setdefault(key, HistogramSnapshot())
            series.count += 1
            series.total += value
            series.samples.append(value)
            if len(series.samples) > self._max_samples:
                del series.samples[: len(series.samples) - self._max_samples]
            self._histogram_buckets[name][key][self._buckets.get_bucket(value)] += 1
        self._notify(MetricType.HISTOGRAM.value, {"name": name, "value": value, "labels": labels})

    def get_counter(self, name: str, **labels: Any) -> float:
        """Get a counter value.

        With no labels, returns the sum across every label combination.
        """
        with self._lock:
            series = self._counters.get(name, {})
            if not labels:
                return float(sum(series.values()))
            return float(series.get(_label_key(labels), 0.0))

    def get_gauge(self, name: str, **labels: Any) -> float | None:
        """Get a gauge value, or None if never set."""
        with self._lock:
            return self._gauges.get(name, {}).get(_label_key(labels))

    def get_histogram(self, name: str, **labels: Any) -> HistogramSnapshot:
        """Get a copy of a histogram series."""
        with self._lock:
            series = self._histograms.get(name, {}).get(_label_key(labels))
            if series is None:
                return HistogramSnapshot()
            return HistogramSnapshot(
                count=series.count, total=series.total, samples=list(series.samples)
            )

    def snapshot(self) -> dict[str, Any]:
        """Get a plain-dict view of every series.

        Returns:
            Mapping of metric type to metric name to list of series
        """
        with self._lock:
            return {
                "counters": {
                    name: [{"labels": dict(k), "value": v} for k, v in series.items()]
                    for name, series in self._counters.items()
                },
                "gauges": {
                    name: [{"labels": dict(k), "value": v} for k, v in series.items()]
                    for name, series in self._gauges.items()
                },
                "histograms": {
                    name: [
                        {
                            "labels": dict(k),
                            "count": h.count,
                            "sum": h.total,
                            "p50": h.p50,
                            "p95": h.p95,
                            "p99": h.p99,
                        }
                        for k, h in series.items()
                    ]
                    for name, series in self._histograms.items()
                },
            }

    def add_callback(self, callback: Callable[[str, dict[str, Any]], None]) -> None:
        """Add a callback for metric events.

        Args:
            callback: Function called with (metric_type, data)
        """
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[str, dict[str, Any]], None]) -> None:
        """Remove a callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify(self, event_type: str, data: dict[str, Any]) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event_type, data)
            except Exception:
                _logger.debug("Metrics callback failed", exc_info=True)

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._histogram_buckets.clear()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        ns = self._namespace
        lines: list[str] = []

        with self._lock:
            for name, series in sorted(self._counters.items()):
                lines.append(f"# TYPE {ns}_{name} counter")
                for key, value in series.items():
                    lines.append(f"{ns}_{name}{_format_labels(key)} {value:g}")

            for name, series in sorted(self._gauges.items()):
                lines.append(f"# TYPE {ns}_{name} gauge")
                for key, value in series.items():
                    lines.append(f"{ns}_{name}{_format_labels(key)} {value:g}")

            for name, series in sorted(self._histograms.items()):
                lines.append(f"# TYPE {ns}_{name} histogram")
                for key, hist in series.items():
                    buckets = self._histogram_buckets[name][key]
                    cumulative = 0
                    for boundary in self._buckets.boundaries:
                        cumulative += buckets.get(str(boundary), 0)
                        le = _format_labels(key, f'le="{boundary}"')
                        lines.append(f"{ns}_{name}_bucket{le} {cumulative}")
                    cumulative += buckets.get("+Inf", 0)
                    inf = _format_labels(key, 'le="+Inf"')
                    lines.append(f"{ns}_{name}_bucket{inf} {cumulative}")
                    lines.append(f"{ns}_{name}_sum{_format_labels(key)} {hist.total:g}")
                    lines.append(f"{ns}_{name}_count{_format_labels(key)} {hist.count}")

        return "\n".join(lines)
