# src/trapmetrics/snapshot.py
"""Snapshotter: point-in-time extraction of a MetricStore.

Each category is copied under its own lock, so a snapshot reflects a single
logical instant per category. Categories are extracted concurrently on a
small thread pool and joined before returning; the result is identical to
extracting them one after another.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field

from trapmetrics.histogram import Histogram
from trapmetrics.store import GaugeValue, MetricStore


@dataclass(frozen=True, slots=True)
class ResetPolicy:
    """Which categories are cleared after being copied."""

    counters: bool = True
    gauges: bool = True
    histograms: bool = True
    text: bool = True

    @classmethod
    def disabled(cls) -> ResetPolicy:
        return cls(counters=False, gauges=False, histograms=False, text=False)


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Copied contents of a MetricStore, one map per category."""

    counters: dict[str, int] = field(default_factory=dict)
    gauges: dict[str, GaugeValue] = field(default_factory=dict)
    histograms: dict[str, Histogram] = field(default_factory=dict)
    text: dict[str, str] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.counters or self.gauges or self.histograms or self.text)

    def __len__(self) -> int:
        return len(self.counters) + len(self.gauges) + len(self.histograms) + len(self.text)


class Snapshotter:
    """Takes snapshots of a MetricStore under a configurable reset policy.

    The policy can be suspended for the duration of a ``with`` block via
    reset_disabled(); the previous policy is restored on exit even if the
    block raises.

    Example:
        >>> snapper = Snapshotter(store, ResetPolicy(gauges=False))
        >>> snap = snapper.snapshot()
        >>> snap.counters
        {'requests': 3}
    """

    def __init__(self, store: MetricStore, policy: ResetPolicy | None = None) -> None:
        self._store = store
        self._policy = policy or ResetPolicy()
        self._policy_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="trapmetrics-snapshot")

    @property
    def policy(self) -> ResetPolicy:
        with self._policy_lock:
            return self._policy

    def set_policy(self, policy: ResetPolicy) -> None:
        with self._policy_lock:
            self._policy = policy

    @contextmanager
    def reset_disabled(self) -> Iterator[None]:
        """Force every reset flag off for the duration of the block."""
        with self._policy_lock:
            previous = self._policy
            self._policy = ResetPolicy.disabled()
        try:
            yield
        finally:
            with self._policy_lock:
                self._policy = previous

    def snapshot(self) -> Snapshot:
        """Copy all four categories concurrently, honoring the reset policy."""
        policy = self.policy
        counters = self._executor.submit(self._store.extract_counters, policy.counters)
        gauges = self._executor.submit(self._store.extract_gauges, policy.gauges)
        histograms = self._executor.submit(self._store.extract_histograms, policy.histograms)
        text = self._executor.submit(self._store.extract_text, policy.text)
        return Snapshot(
            counters=counters.result(),
            gauges=gauges.result(),
            histograms=histograms.result(),
            text=text.result(),
        )

    def close(self) -> None:
        """Shut down the extraction pool."""
        self._executor.shutdown(wait=True)
