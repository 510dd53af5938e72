"""Core infrastructure: configuration, defaults and logging."""

from trapmetrics.core.config import (
    APISettings,
    BrokerSettings,
    CheckSettings,
    MetricsSettings,
    SubmitSettings,
    load_settings,
)
from trapmetrics.core.logging import configure_logging, get_logger

__all__ = [
    "APISettings",
    "BrokerSettings",
    "CheckSettings",
    "MetricsSettings",
    "SubmitSettings",
    "configure_logging",
    "get_logger",
    "load_settings",
]
