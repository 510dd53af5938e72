"""trapmetrics: collect counters, gauges, histograms and text metrics and
ship them periodically to an HTTP trap.

Example:
    >>> from trapmetrics import TrapMetrics, MetricsSettings
    >>> metrics = TrapMetrics(MetricsSettings(api={"token_key": "..."}))
    >>> metrics.start()
    >>> metrics.increment("requests")
"""

from trapmetrics.checkmgr import BrokerSelector, CheckResolver, ResolverState, Trap
from trapmetrics.contracts import Metric, MetricKind, MetricSet, WireType
from trapmetrics.core.config import (
    APISettings,
    BrokerSettings,
    CheckSettings,
    MetricsSettings,
    SubmitSettings,
    load_settings,
)
from trapmetrics.errors import (
    AmbiguousCheckError,
    APIError,
    BrokerSelectionError,
    CheckResolutionError,
    ConfigurationError,
    MetricNotFoundError,
    SubmissionError,
    TrapMetricsError,
)
from trapmetrics.flush import FlushCoordinator
from trapmetrics.histogram import Histogram
from trapmetrics.metrics import HistogramHandle, TrapMetrics
from trapmetrics.snapshot import ResetPolicy, Snapshot, Snapshotter
from trapmetrics.store import MetricStore
from trapmetrics.submit import Submitter, TrapResult
from trapmetrics.tags import Tag

__all__ = [
    "APIError",
    "APISettings",
    "AmbiguousCheckError",
    "BrokerSelectionError",
    "BrokerSelector",
    "BrokerSettings",
    "CheckResolutionError",
    "CheckResolver",
    "CheckSettings",
    "ConfigurationError",
    "FlushCoordinator",
    "Histogram",
    "HistogramHandle",
    "Metric",
    "MetricKind",
    "MetricNotFoundError",
    "MetricSet",
    "MetricStore",
    "MetricsSettings",
    "ResetPolicy",
    "ResolverState",
    "Snapshot",
    "Snapshotter",
    "SubmissionError",
    "SubmitSettings",
    "Submitter",
    "Tag",
    "Trap",
    "TrapMetrics",
    "TrapMetricsError",
    "TrapResult",
    "WireType",
    "load_settings",
]
