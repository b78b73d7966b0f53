"""
Metrics collection for the DEJA-VU data layer.

Provides counters, gauges, histograms and timers recorded into an
in-process collector, with JSON and Prometheus text export.
"""

import time
import threading
from datetime import datetime
from typing import Dict, List, Any, Optional, Union
from dataclasses import dataclass, field
from collections import deque
from enum import Enum
import json
import statistics

from .logging_config import get_logger


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class MetricUnit(str, Enum):
    """Metric units."""
    COUNT = "count"
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    PERCENT = "percent"


@dataclass
class MetricValue:
    """A single metric value with metadata."""
    name: str
    value: Union[int, float]
    metric_type: MetricType
    unit: MetricUnit
    timestamp: datetime
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'value': self.value,
            'type': self.metric_type.value,
            'unit': self.unit.value,
            'timestamp': self.timestamp.isoformat(),
            'labels': self.labels
        }


@dataclass
class MetricSeries:
    """A bounded series of metric values."""
    name: str
    metric_type: MetricType
    unit: MetricUnit
    values: deque = field(default_factory=lambda: deque(maxlen=1000))
    last_updated: datetime = field(default_factory=datetime.utcnow)

    def add_value(self, value: Union[int, float], timestamp: Optional[datetime] = None, **labels):
        """Add a value to the series."""
        if timestamp is None:
            timestamp = datetime.utcnow()

        self.values.append(MetricValue(
            name=self.name,
            value=value,
            metric_type=self.metric_type,
            unit=self.unit,
            timestamp=timestamp,
            labels=labels
        ))
        self.last_updated = timestamp

    def get_latest_value(self) -> Optional[MetricValue]:
        return self.values[-1] if self.values else None

    def calculate_statistics(self) -> Dict[str, float]:
        """Calculate statistics over the retained values."""
        values = [value.value for value in self.values]
        if not values:
            return {}

        return {
            'count': len(values),
            'sum': sum(values),
            'min': min(values),
            'max': max(values),
            'mean': statistics.mean(values),
            'median': statistics.median(values),
        }


class Counter:
    """Counter metric that only increases."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._value = 0
        self._lock = threading.Lock()

    def increment(self, amount: Union[int, float] = 1, **labels):
        """Increment the counter."""
        with self._lock:
            self._value += amount
            value = self._value

        MetricsCollector.get_instance().record_metric(
            self.name, value, MetricType.COUNTER, MetricUnit.COUNT, **labels
        )

    def get_value(self) -> Union[int, float]:
        with self._lock:
            return self._value

    def reset(self):
        with self._lock:
            self._value = 0


class Gauge:
    """Gauge metric that can increase or decrease."""

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT):
        self.name = name
        self.description = description
        self.unit = unit
        self._value = 0
        self._lock = threading.Lock()

    def set(self, value: Union[int, float], **labels):
        """Set the gauge value."""
        with self._lock:
            self._value = value

        MetricsCollector.get_instance().record_metric(
            self.name, value, MetricType.GAUGE, self.unit, **labels
        )

    def get_value(self) -> Union[int, float]:
        with self._lock:
            return self._value


class Histogram:
    """Histogram metric for tracking distributions."""

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                 buckets: List[float] = None):
        self.name = name
        self.description = description
        self.unit = unit
        self.buckets = buckets or [0.1, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf')]
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: Union[int, float], **labels):
        """Observe a value."""
        with self._lock:
            self._sum += value
            self._count += 1

            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

        MetricsCollector.get_instance().record_metric(
            self.name, value, MetricType.HISTOGRAM, self.unit, **labels
        )

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'buckets': self._bucket_counts.copy()
            }


class Timer:
    """Timer metric for measuring durations in seconds."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self.histogram = Histogram(f"{name}_duration", description, MetricUnit.SECONDS)

    def time(self, **labels):
        """Context manager for timing operations."""
        return TimerContext(self, labels)

    def record(self, duration: float, **labels):
        self.histogram.observe(duration, **labels)


class TimerContext:
    """Context manager for timing operations."""

    def __init__(self, timer: Timer, labels: Dict[str, str]):
        self.timer = timer
        self.labels = labels
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.timer.record(time.perf_counter() - self.start_time, **self.labels)


class MetricsCollector:
    """Central metrics collection system."""

    _instance: Optional['MetricsCollector'] = None
    _lock = threading.Lock()

    def __init__(self):
        self.logger = get_logger(__name__, 'metrics_collector')
        self.metrics: Dict[str, MetricSeries] = {}
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self.histograms: Dict[str, Histogram] = {}
        self.timers: Dict[str, Timer] = {}

        self.stats = {
            'metrics_recorded': 0,
            'start_time': datetime.utcnow(),
            'last_collection_time': None
        }

    @classmethod
    def get_instance(cls) -> 'MetricsCollector':
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton so the next access starts from an empty collector."""
        with cls._lock:
            cls._instance = None

    def record_metric(
        self,
        name: str,
        value: Union[int, float],
        metric_type: MetricType,
        unit: MetricUnit,
        timestamp: Optional[datetime] = None,
        **labels
    ):
        """Record a metric value."""
        if timestamp is None:
            timestamp = datetime.utcnow()

        if name not in self.metrics:
            self.metrics[name] = MetricSeries(name=name, metric_type=metric_type, unit=unit)

        self.metrics[name].add_value(value, timestamp, **labels)

        self.stats['metrics_recorded'] += 1
        self.stats['last_collection_time'] = timestamp

    def get_counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        if name not in self.counters:
            self.counters[name] = Counter(name, description)
        return self.counters[name]

    def get_gauge(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT) -> Gauge:
        """Get or create a gauge."""
        if name not in self.gauges:
            self.gauges[name] = Gauge(name, description, unit)
        return self.gauges[name]

    def get_histogram(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                      buckets: List[float] = None) -> Histogram:
        """Get or create a histogram."""
        if name not in self.histograms:
            self.histograms[name] = Histogram(name, description, unit, buckets)
        return self.histograms[name]

    def get_timer(self, name: str, description: str = "") -> Timer:
        """Get or create a timer."""
        if name not in self.timers:
            self.timers[name] = Timer(name, description)
        return self.timers[name]

    def get_metric_series(self, name: str) -> Optional[MetricSeries]:
        return self.metrics.get(name)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics."""
        summary = {
            'total_metrics': len(self.metrics),
            'collection_stats': self.stats.copy(),
            'metrics': {}
        }

        for name, series in self.metrics.items():
            latest_value = series.get_latest_value()
            summary['metrics'][name] = {
                'type': series.metric_type.value,
                'unit': series.unit.value,
                'latest_value': latest_value.value if latest_value else None,
                'latest_timestamp': latest_value.timestamp.isoformat() if latest_value else None,
                'statistics': series.calculate_statistics(),
                'value_count': len(series.values)
            }

        return summary

    def export_metrics(self, format_type: str = 'json') -> str:
        """Export metrics in specified format."""
        if format_type == 'json':
            return json.dumps(self.get_metrics_summary(), default=str, indent=2)
        elif format_type == 'prometheus':
            return self._export_prometheus_format()
        else:
            raise ValueError(f"Unsupported format: {format_type}")

    def _export_prometheus_format(self) -> str:
        """Export metrics in Prometheus format."""
        lines = []

        for series in self.metrics.values():
            latest_value = series.get_latest_value()
            if not latest_value:
                continue

            metric_name = series.name.replace('-', '_').replace('.', '_')
            lines.append(f"# HELP {metric_name} {series.name}")
            lines.append(f"# TYPE {metric_name} {series.metric_type.value}")

            labels = [f'{k}="{v}"' for k, v in latest_value.labels.items()]
            label_str = '{' + ','.join(labels) + '}' if labels else ''
            lines.append(f"{metric_name}{label_str} {latest_value.value}")

        return '\n'.join(lines)


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return MetricsCollector.get_instance()
