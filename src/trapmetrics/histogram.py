"""Log-linear histogram used for distribution metrics.

Values are accumulated into bins holding two significant decimal digits
(e.g. 30.28 lands in the 3.0e+01 bin). The decimal-string rendering
``H[<mantissa>e<exponent>]=<count>`` is the form the trap ingests for
histogram metrics.

Thread Safety:
    Every public method takes the histogram's own lock, so record() can be
    called concurrently with copy()/copy_and_reset(). copy_and_reset() swaps
    the bin table atomically: a sample is either in the returned copy or in
    the (now empty) live histogram, never lost.
"""

from __future__ import annotations

import math
import threading
from datetime import timedelta

# Bin key: (sign, exponent, mantissa) where mantissa is 10..99, or the zero bin.
BinKey = tuple[int, int, int]

_ZERO_BIN: BinKey = (0, 0, 0)
_MIN_EXPONENT = -128
_MAX_EXPONENT = 127
# Absorbs float error in the scaled value (0.3 / 0.1 * 10 == 29.999999999999996)
_BIN_EPSILON = 1e-13


def _mantissa(magnitude: float, exponent: int) -> int:
    return math.floor(magnitude / 10.0**exponent * 10 + _BIN_EPSILON)


def _bin_for(value: float) -> BinKey:
    """Return the bin a value falls into."""
    if value == 0 or math.isnan(value):
        return _ZERO_BIN
    sign = 1 if value > 0 else -1
    magnitude = abs(value)
    if math.isinf(magnitude):
        return (sign, _MAX_EXPONENT, 99)
    exponent = math.floor(math.log10(magnitude))
    if exponent < _MIN_EXPONENT:
        return _ZERO_BIN
    if exponent > _MAX_EXPONENT:
        return (sign, _MAX_EXPONENT, 99)
    mantissa = _mantissa(magnitude, exponent)
    # log10/division rounding can land one decade off at the boundaries
    if mantissa >= 100:
        mantissa //= 10
        exponent += 1
    elif mantissa < 10:
        exponent -= 1
        mantissa = min(_mantissa(magnitude, exponent), 99)
    if exponent < _MIN_EXPONENT:
        return _ZERO_BIN
    if exponent > _MAX_EXPONENT:
        return (sign, _MAX_EXPONENT, 99)
    return (sign, exponent, mantissa)


def _bin_value(key: BinKey) -> float:
    sign, exponent, mantissa = key
    return sign * mantissa / 10 * 10.0**exponent


def _bin_string(key: BinKey) -> str:
    sign, exponent, mantissa = key
    if sign == 0:
        return "0.0e+00"
    prefix = "-" if sign < 0 else ""
    return f"{prefix}{mantissa // 10}.{mantissa % 10}e{exponent:+03d}"


class Histogram:
    """Accumulating distribution of recorded values.

    Example:
        >>> h = Histogram()
        >>> h.record(30.28)
        >>> h.decimal_strings()
        ['H[3.0e+01]=1']
    """

    def __init__(self, bins: dict[BinKey, int] | None = None) -> None:
        self._bins: dict[BinKey, int] = dict(bins) if bins else {}
        self._lock = threading.Lock()

    def record(self, value: float) -> None:
        """Record a single value."""
        self.record_count(value, 1)

    def record_count(self, value: float, count: int) -> None:
        """Record ``count`` occurrences of ``value``."""
        if count <= 0:
            return
        key = _bin_for(float(value))
        with self._lock:
            self._bins[key] = self._bins.get(key, 0) + count

    def record_duration(self, duration: timedelta | float) -> None:
        """Record a duration, normalized to seconds."""
        if isinstance(duration, timedelta):
            duration = duration.total_seconds()
        self.record(duration)

    def copy(self) -> Histogram:
        """Return an independent copy; the live histogram is untouched."""
        with self._lock:
            return Histogram(self._bins)

    def copy_and_reset(self) -> Histogram:
        """Return a copy holding every recorded sample and empty this histogram."""
        with self._lock:
            bins, self._bins = self._bins, {}
        return Histogram(bins)

    def count(self) -> int:
        """Total number of recorded samples."""
        with self._lock:
            return sum(self._bins.values())

    def decimal_strings(self) -> list[str]:
        """Render non-empty bins as ``H[<bin>]=<count>`` strings, ascending by bin."""
        with self._lock:
            items = sorted(self._bins.items(), key=lambda item: _bin_value(item[0]))
        return [f"H[{_bin_string(key)}]={count}" for key, count in items]

    def __len__(self) -> int:
        """Number of non-empty bins."""
        with self._lock:
            return len(self._bins)
