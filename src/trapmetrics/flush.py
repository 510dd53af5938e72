# src/trapmetrics/flush.py
"""FlushCoordinator: single-flight snapshot, package and submit.

Only one flush runs at a time. An overlapping call is dropped, not queued:
the ``_flushing`` flag is tested and set under ``_flush_lock``, and the
lock is never held while the flush body runs.

A flush cycle:
1. Ensure the trap is resolved (a failure skips the cycle before any
   metric is snapshotted, so nothing is lost)
2. Snapshot the store
3. Package: keep metrics that are active on the check, or newly activated
   (those are collected as new metrics to register)
4. Hand (output, new metrics) to the submitter
"""

from __future__ import annotations

import threading
import time
from typing import Protocol

import structlog

from trapmetrics.api.models import CheckBundleMetric
from trapmetrics.checkmgr.resolver import CheckResolver
from trapmetrics.contracts import Metric, MetricKind, MetricSet, WireType, gauge_wire_type
from trapmetrics.errors import TrapMetricsError
from trapmetrics.snapshot import Snapshotter

logger = structlog.get_logger(__name__)


class SubmitterProtocol(Protocol):
    """Delivers a packaged metric set to the trap."""

    def submit(self, output: MetricSet, new_metrics: dict[str, CheckBundleMetric]) -> object: ...


def _timestamp_ms() -> int:
    return time.time_ns() // 1_000_000


class FlushCoordinator:
    """Orchestrates flushes of a MetricStore through a Snapshotter.

    Example:
        >>> coordinator = FlushCoordinator(snapshotter, resolver, submitter)
        >>> coordinator.flush()
        >>> print(coordinator.prom_output())
        requests 42 1700000000000
    """

    def __init__(
        self,
        snapshotter: Snapshotter,
        resolver: CheckResolver,
        submitter: SubmitterProtocol,
        *,
        debug: bool = False,
    ) -> None:
        self._snapshotter = snapshotter
        self._resolver = resolver
        self._submitter = submitter
        self._debug = debug

        self._flush_lock = threading.Lock()
        self._flushing = False

        self._last_lock = threading.Lock()
        self._last_metrics: MetricSet | None = None
        self._last_ts = 0

    @property
    def flushing(self) -> bool:
        with self._flush_lock:
            return self._flushing

    def _begin(self) -> bool:
        with self._flush_lock:
            if self._flushing:
                return False
            self._flushing = True
            return True

    def _end(self) -> None:
        with self._flush_lock:
            self._flushing = False

    def flush(self) -> None:
        """Snapshot, package and submit. Never raises for post-startup failures."""
        if not self._begin():
            logger.debug("Flush already in progress, skipping")
            return
        try:
            try:
                self._resolver.ensure_ready()
            except TrapMetricsError as e:
                logger.error("Unable to resolve trap, skipping flush", error=str(e), error_type=type(e).__name__)
                return

            new_metrics, output = self._package()
            if not output:
                return

            try:
                self._submitter.submit(output, new_metrics)
            except TrapMetricsError as e:
                logger.error("Error sending metrics", error=str(e), error_type=type(e).__name__)
        finally:
            self._end()

    def flush_metrics(self) -> MetricSet:
        """Package current metrics (honoring reset flags) without submitting.

        Returns an empty set if a flush is already in progress.
        """
        if not self._begin():
            return {}
        try:
            _, output = self._package()
            return output
        finally:
            self._end()

    def flush_metrics_no_reset(self) -> MetricSet:
        """Package current metrics without resetting anything and without submitting.

        Returns an empty set if a flush is already in progress.
        """
        if not self._begin():
            return {}
        try:
            with self._snapshotter.reset_disabled():
                _, output = self._package()
            return output
        finally:
            self._end()

    def _package(self) -> tuple[dict[str, CheckBundleMetric], MetricSet]:
        if self._debug:
            logger.debug("Packaging metrics")

        ts = _timestamp_ms()
        snap = self._snapshotter.snapshot()
        new_metrics: dict[str, CheckBundleMetric] = {}
        output: MetricSet = {}

        def admit(name: str, kind: MetricKind) -> bool:
            if self._resolver.is_metric_active(name):
                return True
            if self._resolver.activate_metric(name):
                new_metrics[name] = CheckBundleMetric(name=name, type=str(kind), status="active")
                return True
            return False

        for name, value in snap.counters.items():
            if admit(name, MetricKind.NUMERIC):
                output[name] = Metric(WireType.UINT64, value, ts)

        for name, gauge in snap.gauges.items():
            if admit(name, MetricKind.NUMERIC):
                output[name] = Metric(gauge_wire_type(gauge), gauge, ts)

        for name, hist in snap.histograms.items():
            if admit(name, MetricKind.HISTOGRAM):
                # no timestamp: bins already accumulate over the interval
                output[name] = Metric(WireType.HISTOGRAM, hist.decimal_strings())

        for name, text in snap.text.items():
            if admit(name, MetricKind.TEXT):
                output[name] = Metric(WireType.TEXT, text, ts)

        with self._last_lock:
            self._last_metrics = output
            self._last_ts = _timestamp_ms()

        if self._debug:
            logger.debug("Packaged metrics", count=len(output), new=len(new_metrics))
        return new_metrics, output

    def prom_output(self) -> str:
        """Render the last packaged metric set as ``name value timestamp`` lines.

        Histograms and text metrics are skipped.

        Raises:
            TrapMetricsError: Nothing has been packaged yet
        """
        with self._last_lock:
            if self._last_metrics is None:
                raise TrapMetricsError("no metrics available")
            metrics = self._last_metrics
            ts = self._last_ts

        lines = [
            f"{name} {metric.value} {ts}\n"
            for name, metric in metrics.items()
            if metric.type not in (WireType.HISTOGRAM, WireType.TEXT)
        ]
        return "".join(lines)
