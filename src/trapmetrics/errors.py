# src/trapmetrics/errors.py
"""Exception taxonomy for trapmetrics.

Construction-time problems (ConfigurationError) abort startup. Everything
raised after startup is caught by the flush path and logged: a failed cycle
skips its optional work and the periodic loop carries on.
"""


class TrapMetricsError(Exception):
    """Base class for all trapmetrics errors."""


class ConfigurationError(TrapMetricsError):
    """Raised when required identifying configuration is missing or invalid.

    Examples: no API token AND no submission URL, or a submission URL that
    cannot be parsed.
    """


class APIError(TrapMetricsError):
    """Raised when a resource API call fails.

    Covers transport failures, non-2xx responses and malformed JSON bodies.

    Attributes:
        method: HTTP method of the failed call
        path: API path of the failed call
        status_code: HTTP status, or None for transport/parse failures
        retryable: Whether the failure is considered transient (5xx, 429,
            transport errors)
    """

    def __init__(
        self,
        method: str,
        path: str,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        self.method = method
        self.path = path
        self.status_code = status_code
        self.retryable = retryable
        self.message = message
        super().__init__(f"API {method} {path} failed: {message}")


class CheckResolutionError(TrapMetricsError):
    """Raised when a check lookup succeeded but returned unusable data."""


class AmbiguousCheckError(CheckResolutionError):
    """Raised when more than one active check matches the lookup criteria.

    No preference order is applied; the operator has to disambiguate via
    configuration (explicit check id or submission URL).
    """


class BrokerSelectionError(TrapMetricsError):
    """Raised when no viable broker is available.

    Attributes:
        broker: Pinned broker id when selection was pinned, else None
        reason: The constraint that eliminated the last candidates
    """

    def __init__(self, reason: str, *, broker: int | None = None) -> None:
        self.broker = broker
        self.reason = reason
        if broker is None:
            super().__init__(f"No viable broker: {reason}")
        else:
            super().__init__(f"Designated broker {broker} is invalid: {reason}")


class SubmissionError(TrapMetricsError):
    """Raised when metrics could not be delivered to the trap."""


class MetricNotFoundError(TrapMetricsError, KeyError):
    """Raised by inspection getters when the named metric does not exist."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} metric '{name}' not found")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])
