# src/trapmetrics/metrics.py
"""TrapMetrics: the application-facing entry point.

Owns a MetricStore and wires it to a Snapshotter, CheckResolver, Submitter
and FlushCoordinator. Metric mutations are synchronous and never fail; a
background thread (start()/stop()) flushes every ``interval`` seconds.

Example:
    >>> settings = MetricsSettings(check=CheckSettings(submission_url="http://127.0.0.1:2609/write/app"))
    >>> with TrapMetrics(settings) as metrics:
    ...     metrics.increment("requests")
    ...     metrics.timing("latency", 0.012)
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta

import structlog

from trapmetrics.api.client import APIClient
from trapmetrics.checkmgr.resolver import CheckResolver
from trapmetrics.contracts import MetricSet
from trapmetrics.core.config import MetricsSettings
from trapmetrics.flush import FlushCoordinator, SubmitterProtocol
from trapmetrics.snapshot import ResetPolicy, Snapshotter
from trapmetrics.store import GaugeValue, MetricStore
from trapmetrics.submit import Submitter
from trapmetrics.tags import Tag, metric_name_with_stream_tags

logger = structlog.get_logger(__name__)


class HistogramHandle:
    """A named histogram bound to a MetricStore.

    Values are recorded through the store by name, so a handle keeps
    working after a snapshot has drained and replaced the histogram.
    """

    __slots__ = ("_name", "_store")

    def __init__(self, store: MetricStore, name: str) -> None:
        self._store = store
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def record_value(self, value: float) -> None:
        self._store.record_value(self._name, value)

    def record_duration(self, duration: timedelta | float) -> None:
        self._store.record_duration(self._name, duration)

    def record_count_for_value(self, value: float, count: int) -> None:
        self._store.record_count_for_value(self._name, value, count)

    def remove(self) -> None:
        self._store.remove_histogram(self._name)


class TrapMetrics:
    """Metric collection and periodic submission for one trap.

    Thread Safety:
        All metric methods may be called from any thread. start() and stop()
        are expected to be called from the owning thread.
    """

    def __init__(
        self,
        settings: MetricsSettings | None = None,
        *,
        client: APIClient | None = None,
        resolver: CheckResolver | None = None,
        submitter: SubmitterProtocol | None = None,
    ) -> None:
        """Build the metric pipeline.

        Args:
            settings: Settings; defaults are used when omitted
            client: API client for check management (built from settings
                when omitted and an API token is configured)
            resolver: Pre-built resolver (mainly for tests)
            submitter: Pre-built submitter (mainly for tests)

        Raises:
            ConfigurationError: Neither an API token nor a submission URL is
                configured
        """
        self._settings = settings or MetricsSettings()
        s = self._settings

        self._store = MetricStore()
        self._snapshotter = Snapshotter(
            self._store,
            ResetPolicy(
                counters=s.reset_counters,
                gauges=s.reset_gauges,
                histograms=s.reset_histograms,
                text=s.reset_text,
            ),
        )
        self._resolver = resolver or CheckResolver(s, client=client)
        self._owns_submitter = submitter is None
        self._submitter: SubmitterProtocol = submitter or Submitter(self._resolver, s)
        self._flusher = FlushCoordinator(self._snapshotter, self._resolver, self._submitter, debug=s.debug)

        self._shutdown_event = threading.Event()
        self._flush_thread: threading.Thread | None = None

    @property
    def settings(self) -> MetricsSettings:
        return self._settings

    @property
    def store(self) -> MetricStore:
        return self._store

    @property
    def resolver(self) -> CheckResolver:
        return self._resolver

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the periodic flush thread. No-op if already running."""
        if self._flush_thread is not None and self._flush_thread.is_alive():
            return
        self._shutdown_event.clear()
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name="trapmetrics-flush",
            daemon=True,
        )
        self._flush_thread.start()
        logger.debug("Periodic flush started", interval=self._settings.interval)

    def _flush_loop(self) -> None:
        while not self._shutdown_event.wait(self._settings.interval):
            try:
                self._flusher.flush()
            except Exception:
                # a failed cycle never ends the loop
                logger.exception("Unexpected error in periodic flush")

    def stop(self, *, flush: bool = True, timeout: float | None = 5.0) -> None:
        """Stop the periodic flush thread.

        Args:
            flush: Perform a final flush after the thread stops
            timeout: Seconds to wait for the thread to exit
        """
        self._shutdown_event.set()
        if self._flush_thread is not None:
            self._flush_thread.join(timeout=timeout)
            if self._flush_thread.is_alive():
                logger.warning("Flush thread did not exit within timeout", timeout=timeout)
            self._flush_thread = None
        if flush:
            self._flusher.flush()

    def close(self) -> None:
        """Stop flushing (with a final flush) and release resources."""
        self.stop(flush=True)
        self._snapshotter.close()
        if self._owns_submitter and isinstance(self._submitter, Submitter):
            self._submitter.close()

    def __enter__(self) -> TrapMetrics:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # =========================================================================
    # Flushing
    # =========================================================================

    def flush(self) -> None:
        """Flush now (single-flight; dropped if a flush is running)."""
        self._flusher.flush()

    def flush_metrics(self) -> MetricSet:
        """Package current metrics without submitting them."""
        return self._flusher.flush_metrics()

    def flush_metrics_no_reset(self) -> MetricSet:
        """Package current metrics without resetting or submitting them."""
        return self._flusher.flush_metrics_no_reset()

    def prom_output(self) -> str:
        return self._flusher.prom_output()

    # =========================================================================
    # Check inventory and tags
    # =========================================================================

    def is_metric_active(self, name: str) -> bool:
        return self._resolver.is_metric_active(name)

    def set_metric_tags(self, name: str, tags: list[str]) -> bool:
        """Replace the check tags of a metric (applied on the next flush)."""
        return self._resolver.add_metric_tags(name, tags, append=False)

    def add_metric_tags(self, name: str, tags: list[str]) -> bool:
        """Append check tags to a metric (applied on the next flush)."""
        return self._resolver.add_metric_tags(name, tags, append=True)

    def metric_name_with_stream_tags(self, name: str, tags: list[Tag]) -> str:
        return metric_name_with_stream_tags(name, tags)

    # =========================================================================
    # Counters
    # =========================================================================

    def increment(self, name: str) -> None:
        self._store.increment(name)

    def increment_by_value(self, name: str, delta: int) -> None:
        self._store.increment_by_value(name, delta)

    def add(self, name: str, delta: int) -> None:
        self._store.add(name, delta)

    def set_counter(self, name: str, value: int) -> None:
        self._store.set_counter(name, value)

    def set_counter_func(self, name: str, fn: Callable[[], int]) -> None:
        self._store.set_counter_func(name, fn)

    def remove_counter(self, name: str) -> None:
        self._store.remove_counter(name)

    def remove_counter_func(self, name: str) -> None:
        self._store.remove_counter_func(name)

    # =========================================================================
    # Gauges
    # =========================================================================

    def gauge(self, name: str, value: GaugeValue) -> None:
        self._store.set_gauge(name, value)

    def set_gauge(self, name: str, value: GaugeValue) -> None:
        self._store.set_gauge(name, value)

    def set_gauge_func(self, name: str, fn: Callable[[], GaugeValue]) -> None:
        self._store.set_gauge_func(name, fn)

    def remove_gauge(self, name: str) -> None:
        self._store.remove_gauge(name)

    def remove_gauge_func(self, name: str) -> None:
        self._store.remove_gauge_func(name)

    # =========================================================================
    # Histograms
    # =========================================================================

    def histogram(self, name: str) -> HistogramHandle:
        """Return a handle that records into histogram ``name``."""
        return HistogramHandle(self._store, name)

    def set_histogram_value(self, name: str, value: float) -> None:
        self._store.record_value(name, value)

    def timing(self, name: str, value: float) -> None:
        self._store.timing(name, value)

    def record_value(self, name: str, value: float) -> None:
        self._store.record_value(name, value)

    def record_duration(self, name: str, duration: timedelta | float) -> None:
        self._store.record_duration(name, duration)

    def record_count_for_value(self, name: str, value: float, count: int) -> None:
        self._store.record_count_for_value(name, value, count)

    def remove_histogram(self, name: str) -> None:
        self._store.remove_histogram(name)

    # =========================================================================
    # Text
    # =========================================================================

    def set_text(self, name: str, value: str) -> None:
        self._store.set_text(name, value)

    def set_text_value(self, name: str, value: str) -> None:
        self._store.set_text(name, value)

    def set_text_func(self, name: str, fn: Callable[[], str]) -> None:
        self._store.set_text_func(name, fn)

    def remove_text(self, name: str) -> None:
        self._store.remove_text(name)

    def remove_text_func(self, name: str) -> None:
        self._store.remove_text_func(name)

    def reset(self) -> None:
        """Remove every metric and metric function."""
        self._store.reset()
