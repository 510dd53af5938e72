"""Internal default values.

INTERNAL_DEFAULTS holds values hardcoded in runtime code and NOT exposed in
MetricsSettings. Keeping them in one registry makes the intent explicit:
these are implementation details, not tuning knobs.
"""

from typing import Final

INTERNAL_DEFAULTS: Final[dict[str, dict[str, int | float | bool | str]]] = {
    "api": {
        "url": "https://api.circonus.com/v2",
        "app_name": "trapmetrics",
    },
    "check": {
        "type": "httptrap",
        # New check bundles are created with these reporting settings;
        # metrics populate lazily as they are first observed.
        "period": 60,
        "timeout": 10,
        # Length of the generated hex secret for new checks
        "secret_length": 16,
    },
    "broker": {
        # Port brokers listen on when their details do not say otherwise
        "default_port": 43191,
    },
    "submit": {
        "content_type": "application/json",
    },
}


def get_internal_default(subsystem: str, field: str) -> int | float | bool | str:
    """Get an internal default value.

    Args:
        subsystem: Subsystem name (e.g., "check", "broker")
        field: Field name within subsystem

    Returns:
        The default value

    Raises:
        KeyError: If subsystem or field not found
    """
    return INTERNAL_DEFAULTS[subsystem][field]
