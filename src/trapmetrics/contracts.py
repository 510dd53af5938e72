"""Wire-level metric types shared by the flush and submit paths.

A MetricSet is what gets serialized and shipped to the trap:

    {"requests": {"_type": "L", "_value": 42, "_ts": 1700000000000},
     "latency":  {"_type": "h", "_value": ["H[1.2e-02]=3"]}}

Histograms never carry a timestamp; bin accumulation already spans the
interval.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class MetricKind(StrEnum):
    """Metric type declared on the remote check bundle."""

    NUMERIC = "numeric"
    HISTOGRAM = "histogram"
    TEXT = "text"


class WireType(StrEnum):
    """``_type`` codes understood by the trap."""

    INT32 = "i"
    UINT32 = "I"
    INT64 = "l"
    UINT64 = "L"
    DOUBLE = "n"
    HISTOGRAM = "h"
    TEXT = "s"


_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_UINT64_MAX = 2**64 - 1


def gauge_wire_type(value: Any) -> WireType:
    """Pick the wire type for a gauge value.

    Python has a single int type, so integers are typed by range: int64 when
    they fit, uint64 for larger non-negative values, double otherwise.
    """
    if isinstance(value, bool):
        return WireType.DOUBLE
    if isinstance(value, int):
        if _INT64_MIN <= value <= _INT64_MAX:
            return WireType.INT64
        if 0 <= value <= _UINT64_MAX:
            return WireType.UINT64
    return WireType.DOUBLE


@dataclass(frozen=True, slots=True)
class Metric:
    """A single packaged metric value.

    Attributes:
        type: Wire type code
        value: Number, string, or list of histogram bin strings
        timestamp: Milliseconds since the epoch; None for histograms
    """

    type: WireType
    value: Any
    timestamp: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the trap's JSON shape."""
        out: dict[str, Any] = {"_type": str(self.type), "_value": self.value}
        if self.timestamp is not None:
            out["_ts"] = self.timestamp
        return out


MetricSet = dict[str, Metric]


def metric_set_to_dict(metrics: MetricSet) -> dict[str, dict[str, Any]]:
    """Serialize a whole MetricSet for json encoding."""
    return {name: metric.to_dict() for name, metric in metrics.items()}
