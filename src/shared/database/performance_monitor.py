"""
Operation latency tracking.

Keeps the most recent durations per operation name and reports
count/avg/min/max/p95 over that window. Slow operations are logged.
"""

import math
import time
from collections import deque
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Deque, Dict, Iterator, Optional

from ..logging_config import get_logger
from ..metrics_collector import MetricUnit, get_metrics_collector

DURATION_BUCKETS_MS = [10.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, float('inf')]


class PerformanceMonitor:
    """Rolling-window latency statistics keyed by operation name."""

    def __init__(self, slow_threshold_ms: float = 1000.0, window_size: int = 100):
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.slow_threshold_ms = slow_threshold_ms
        self.window_size = window_size
        self.logger = get_logger(__name__, 'performance_monitor')
        self.metrics = get_metrics_collector()
        self._samples: Dict[str, Deque[float]] = {}

    def start_timer(self, name: str) -> Callable[[], float]:
        """
        Start timing ``name``.

        Returns a function that records the elapsed milliseconds and returns
        them. Call it exactly once; each call records another sample.
        """
        start = time.perf_counter()

        def stop() -> float:
            duration_ms = (time.perf_counter() - start) * 1000
            self.record(name, duration_ms)
            return duration_ms

        return stop

    def record(self, name: str, duration_ms: float) -> None:
        """Add a duration sample, dropping the oldest once the window is full."""
        samples = self._samples.get(name)
        if samples is None:
            samples = self._samples[name] = deque(maxlen=self.window_size)
        samples.append(duration_ms)

        histogram = self.metrics.get_histogram(
            'db_operation_duration_ms',
            'Database operation duration',
            MetricUnit.MILLISECONDS,
            DURATION_BUCKETS_MS,
        )
        histogram.observe(duration_ms, operation=name)

        if duration_ms > self.slow_threshold_ms:
            self.logger.warning(
                f"Slow query detected: {name} took {duration_ms:.0f}ms",
                operation=name,
                duration_ms=round(duration_ms, 2),
            )

    @contextmanager
    def measure(self, name: str) -> Iterator[None]:
        """Time the enclosed block, including when it raises."""
        stop = self.start_timer(name)
        try:
            yield
        finally:
            stop()

    def get_samples(self, name: str) -> list:
        """Current window for ``name``, oldest first."""
        return list(self._samples.get(name, ()))

    def get_stats(self, name: Optional[str] = None) -> Dict[str, Any]:
        """
        Latency statistics.

        With a name, returns ``{count, avg, min, max, p95}`` for it (``avg``
        rounded to whole milliseconds) (zeros if
        nothing was recorded). Without one, maps every recorded name to its
        statistics.
        """
        if name is not None:
            return self._calculate_stats(self._samples.get(name, ()))

        return {
            operation: self._calculate_stats(samples)
            for operation, samples in self._samples.items()
        }

    def clear_stats(self, name: Optional[str] = None) -> None:
        if name is None:
            self._samples.clear()
        else:
            self._samples.pop(name, None)

    @staticmethod
    def _calculate_stats(samples) -> Dict[str, float]:
        if not samples:
            return {'count': 0, 'avg': 0, 'min': 0, 'max': 0, 'p95': 0}

        ordered = sorted(samples)
        count = len(ordered)
        return {
            'count': count,
            'avg': math.floor(sum(ordered) / count + 0.5),  # nearest whole ms, halves up
            'min': ordered[0],
            'max': ordered[-1],
            'p95': ordered[int(count * 0.95)],
        }


# Global performance monitor instance
_performance_monitor: Optional[PerformanceMonitor] = None


def get_performance_monitor() -> PerformanceMonitor:
    """Get the global performance monitor instance."""
    global _performance_monitor
    if _performance_monitor is None:
        from ..config import get_settings

        monitoring = get_settings().monitoring
        _performance_monitor = PerformanceMonitor(
            slow_threshold_ms=monitoring.slow_query_threshold_ms,
            window_size=monitoring.perf_sample_window,
        )
    return _performance_monitor


def monitored(name: Optional[str] = None, monitor: Optional[PerformanceMonitor] = None):
    """
    Decorator timing every call of a coroutine function.

    Usage:
        @monitored("create_post")
        async def create_post(...):
            ...
    """
    def decorator(func):
        operation = name or func.__qualname__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            with (monitor or get_performance_monitor()).measure(operation):
                return await func(*args, **kwargs)

        return wrapper

    return decorator
