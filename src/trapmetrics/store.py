# src/trapmetrics/store.py
"""MetricStore: the in-memory home of every locally recorded metric.

Four categories (counters, gauges, histograms, text), each with its own
lock covering both stored values and function-valued ("computed on demand")
entries. No operation ever holds more than one category lock, so there is
no lock-ordering hazard between categories.

Mutations never fail: writing to an unknown name creates it, removing an
unknown name is a no-op.

Function-valued metrics are evaluated synchronously during extraction. They
are assumed cheap and non-blocking; a slow callback delays the snapshot of
its category.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import structlog

from trapmetrics.errors import MetricNotFoundError
from trapmetrics.histogram import Histogram

logger = structlog.get_logger(__name__)

_UINT64_MASK = 2**64 - 1

GaugeValue = int | float


def _evaluate(kind: str, funcs: dict[str, Callable[[], Any]], into: dict[str, Any]) -> None:
    """Evaluate function-valued metrics into a result map.

    Function results overwrite stored values of the same name. A callback
    that raises is logged and skipped so one broken callback cannot sink
    the rest of the snapshot.
    """
    for name, fn in funcs.items():
        try:
            into[name] = fn()
        except Exception as e:
            logger.warning(
                "Metric function failed, skipping",
                kind=kind,
                metric=name,
                error=str(e),
            )


class MetricStore:
    """Mutex-guarded maps of counters, gauges, histograms and text values.

    Owned by a single TrapMetrics instance; there is no module-level state,
    so independent stores can coexist in one process.

    Thread Safety:
        All methods are safe to call from any thread. Each category has an
        independent lock; histogram records additionally take the
        histogram's own lock.
    """

    def __init__(self) -> None:
        self._counter_lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._counter_funcs: dict[str, Callable[[], int]] = {}

        self._gauge_lock = threading.Lock()
        self._gauges: dict[str, GaugeValue] = {}
        self._gauge_funcs: dict[str, Callable[[], GaugeValue]] = {}

        self._histogram_lock = threading.Lock()
        self._histograms: dict[str, Histogram] = {}

        self._text_lock = threading.Lock()
        self._text: dict[str, str] = {}
        self._text_funcs: dict[str, Callable[[], str]] = {}

    # =========================================================================
    # Counters
    # =========================================================================

    def add(self, name: str, delta: int) -> None:
        """Add delta to a counter, creating it at zero first if absent.

        Counters are unsigned 64-bit; the sum wraps at 2**64.
        """
        with self._counter_lock:
            self._counters[name] = (self._counters.get(name, 0) + delta) & _UINT64_MASK

    def increment(self, name: str) -> None:
        """Increment a counter by one."""
        self.add(name, 1)

    def increment_by_value(self, name: str, delta: int) -> None:
        self.add(name, delta)

    def set_counter(self, name: str, value: int) -> None:
        """Set a counter to an absolute value."""
        with self._counter_lock:
            self._counters[name] = value & _UINT64_MASK

    def set_counter_func(self, name: str, fn: Callable[[], int]) -> None:
        """Compute a counter from fn at every snapshot."""
        with self._counter_lock:
            self._counter_funcs[name] = fn

    def remove_counter(self, name: str) -> None:
        with self._counter_lock:
            self._counters.pop(name, None)

    def remove_counter_func(self, name: str) -> None:
        with self._counter_lock:
            self._counter_funcs.pop(name, None)

    def get_counter(self, name: str) -> int:
        """Return the stored counter value (inspection/testing helper).

        Raises:
            MetricNotFoundError: If the counter does not exist
        """
        with self._counter_lock:
            if name not in self._counters:
                raise MetricNotFoundError("Counter", name)
            return self._counters[name]

    # =========================================================================
    # Gauges
    # =========================================================================

    def set_gauge(self, name: str, value: GaugeValue) -> None:
        """Set a gauge; last write wins."""
        with self._gauge_lock:
            self._gauges[name] = value

    def set_gauge_func(self, name: str, fn: Callable[[], GaugeValue]) -> None:
        """Compute a gauge from fn at every snapshot."""
        with self._gauge_lock:
            self._gauge_funcs[name] = fn

    def remove_gauge(self, name: str) -> None:
        with self._gauge_lock:
            self._gauges.pop(name, None)

    def remove_gauge_func(self, name: str) -> None:
        with self._gauge_lock:
            self._gauge_funcs.pop(name, None)

    def get_gauge(self, name: str) -> GaugeValue:
        """Return the stored gauge value (inspection/testing helper).

        Raises:
            MetricNotFoundError: If the gauge does not exist
        """
        with self._gauge_lock:
            if name not in self._gauges:
                raise MetricNotFoundError("Gauge", name)
            return self._gauges[name]

    # =========================================================================
    # Histograms
    # =========================================================================

    def record_value(self, name: str, value: float) -> None:
        """Record a value into a histogram, creating the histogram if absent."""
        self.record_count_for_value(name, value, 1)

    def timing(self, name: str, value: float) -> None:
        self.record_value(name, value)

    def record_duration(self, name: str, duration: timedelta | float) -> None:
        """Record a duration (timedelta or seconds) into a histogram."""
        if isinstance(duration, timedelta):
            duration = duration.total_seconds()
        self.record_count_for_value(name, duration, 1)

    def record_count_for_value(self, name: str, value: float, count: int) -> None:
        """Record ``count`` occurrences of ``value`` into a histogram.

        The category lock is held across lookup and record so a concurrent
        destructive snapshot cannot orphan the histogram mid-write.
        """
        with self._histogram_lock:
            hist = self._histograms.get(name)
            if hist is None:
                hist = Histogram()
                self._histograms[name] = hist
            hist.record_count(value, count)

    def remove_histogram(self, name: str) -> None:
        with self._histogram_lock:
            self._histograms.pop(name, None)

    def get_histogram(self, name: str) -> list[str]:
        """Return the histogram's decimal bin strings (inspection/testing helper).

        Raises:
            MetricNotFoundError: If the histogram does not exist
        """
        with self._histogram_lock:
            if name not in self._histograms:
                raise MetricNotFoundError("Histogram", name)
            return self._histograms[name].decimal_strings()

    # =========================================================================
    # Text
    # =========================================================================

    def set_text(self, name: str, value: str) -> None:
        """Set a text metric; last write wins."""
        with self._text_lock:
            self._text[name] = value

    def set_text_func(self, name: str, fn: Callable[[], str]) -> None:
        """Compute a text metric from fn at every snapshot."""
        with self._text_lock:
            self._text_funcs[name] = fn

    def remove_text(self, name: str) -> None:
        with self._text_lock:
            self._text.pop(name, None)

    def remove_text_func(self, name: str) -> None:
        with self._text_lock:
            self._text_funcs.pop(name, None)

    def get_text(self, name: str) -> str:
        """Return the stored text value (inspection/testing helper).

        Raises:
            MetricNotFoundError: If the text metric does not exist
        """
        with self._text_lock:
            if name not in self._text:
                raise MetricNotFoundError("Text", name)
            return self._text[name]

    # =========================================================================
    # Extraction (used by Snapshotter)
    # =========================================================================

    def extract_counters(self, reset: bool) -> dict[str, int]:
        """Copy counters, optionally clearing stored values, then merge functions."""
        with self._counter_lock:
            result = dict(self._counters)
            if reset and result:
                self._counters = {}
            funcs = dict(self._counter_funcs)
        _evaluate("counter", funcs, result)
        return result

    def extract_gauges(self, reset: bool) -> dict[str, GaugeValue]:
        """Copy gauges, optionally clearing stored values, then merge functions."""
        with self._gauge_lock:
            result = dict(self._gauges)
            if reset and result:
                self._gauges = {}
            funcs = dict(self._gauge_funcs)
        _evaluate("gauge", funcs, result)
        return result

    def extract_histograms(self, reset: bool) -> dict[str, Histogram]:
        """Copy histograms; with reset, drain each one and clear the category."""
        with self._histogram_lock:
            if reset:
                result = {name: hist.copy_and_reset() for name, hist in self._histograms.items()}
                if result:
                    self._histograms = {}
            else:
                result = {name: hist.copy() for name, hist in self._histograms.items()}
        return result

    def extract_text(self, reset: bool) -> dict[str, str]:
        """Copy text values, optionally clearing stored values, then merge functions."""
        with self._text_lock:
            result = dict(self._text)
            if reset and result:
                self._text = {}
            funcs = dict(self._text_funcs)
        _evaluate("text", funcs, result)
        return result

    # =========================================================================
    # Whole-store
    # =========================================================================

    def reset(self) -> None:
        """Remove every metric and metric function from every category."""
        with self._counter_lock:
            self._counters = {}
            self._counter_funcs = {}
        with self._gauge_lock:
            self._gauges = {}
            self._gauge_funcs = {}
        with self._histogram_lock:
            self._histograms = {}
        with self._text_lock:
            self._text = {}
            self._text_funcs = {}
