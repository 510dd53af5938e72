"""
Configuration schema and loading for trapmetrics.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

import os
import re
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator

from trapmetrics.core.defaults import get_internal_default

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


class APISettings(BaseModel):
    """Resource API connection settings.

    A missing token_key disables check management entirely: the submission
    URL must then be configured explicitly and every metric is treated as
    active.

    Example YAML:
        api:
          url: api.circonus.com
          token_key: ${TRAPMETRICS_TOKEN}
          token_app: my-service
    """

    model_config = {"frozen": True}

    url: str = Field(
        default=str(get_internal_default("api", "url")),
        description="API base URL; a bare host is expanded to https://<host>/v2",
    )
    token_key: str | None = Field(default=None, description="API token (absent = check management disabled)")
    token_app: str = Field(
        default=str(get_internal_default("api", "app_name")),
        description="Application name presented with the token",
    )
    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    max_retries: int = Field(default=4, ge=0, description="Retries for transient failures (5xx, 429, transport)")
    retry_wait_min: float = Field(default=1.0, ge=0, description="Minimum backoff between retries in seconds")
    retry_wait_max: float = Field(default=15.0, ge=0, description="Maximum backoff between retries in seconds")

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        """Expand bare hosts and drop a trailing slash."""
        if not v:
            raise ValueError("api url must not be empty")
        if "/" not in v:
            v = f"https://{v}/v2"
        return v.rstrip("/")

    @property
    def enabled(self) -> bool:
        """Whether check management is enabled (a token is configured)."""
        return bool(self.token_key)


class CheckSettings(BaseModel):
    """How the submission target (check) is located or created.

    Resolution order: submission_url, then id, then a search on
    instance_id + search_tag, then creation of a new check.
    """

    model_config = {"frozen": True}

    submission_url: str | None = Field(default=None, description="Explicit trap URL")
    id: int | None = Field(default=None, gt=0, description="Check id (not check bundle id)")
    instance_id: str | None = Field(default=None, description="Unique instance id; check target when creating")
    search_tag: str | None = Field(default=None, description="Tag used to search for an existing check")
    display_name: str | None = Field(default=None, description="Display name for a created check")
    secret: str | None = Field(default=None, description="Trap secret for a created check")
    tags: tuple[str, ...] = Field(default=(), description="Extra tags for a created check")
    type: str = Field(
        default=str(get_internal_default("check", "type")),
        description="Check type brokers must support",
    )
    max_url_age: float = Field(
        default=60.0,
        gt=0,
        description="Seconds after which a failing submission URL is refreshed",
    )
    force_metric_activation: bool = Field(
        default=False,
        description="Re-activate metrics present on the check but not active",
    )

    @field_validator("submission_url")
    @classmethod
    def validate_submission_url(cls, v: str | None) -> str | None:
        """Submission URLs must be absolute http(s) URLs."""
        if v is None or v == "":
            return None
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"submission_url must be an absolute http(s) URL, got {v!r}")
        return v


class BrokerSettings(BaseModel):
    """Broker selection used when a new check has to be created."""

    model_config = {"frozen": True}

    id: int | None = Field(default=None, gt=0, description="Pinned broker id (numeric part of the cid)")
    select_tag: str | None = Field(default=None, description="Tag to narrow the broker candidates")
    max_response_time: float = Field(
        default=0.5,
        gt=0,
        description="Seconds a broker has to accept a connection to be viable",
    )
    client_version: int | None = Field(
        default=None,
        ge=0,
        description="When set, brokers requiring a newer client version are not viable",
    )


class SubmitSettings(BaseModel):
    """Trap submission transport settings."""

    model_config = {"frozen": True}

    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    max_retries: int = Field(default=3, ge=0, description="Retries on 5xx and transport errors")
    retry_wait_min: float = Field(default=1.0, ge=0, description="Minimum backoff in seconds")
    retry_wait_max: float = Field(default=5.0, ge=0, description="Maximum backoff in seconds")


class MetricsSettings(BaseModel):
    """Root settings for a TrapMetrics instance.

    Example YAML:
        interval: 10
        reset_gauges: false
        check:
          submission_url: https://trap.example.com/module/httptrap/<uuid>/<secret>
    """

    model_config = {"frozen": True}

    api: APISettings = Field(default_factory=APISettings)
    check: CheckSettings = Field(default_factory=CheckSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    submit: SubmitSettings = Field(default_factory=SubmitSettings)

    interval: float = Field(default=10.0, gt=0, description="Seconds between periodic flushes")
    reset_counters: bool = Field(default=True, description="Clear counters after each snapshot")
    reset_gauges: bool = Field(default=True, description="Clear gauges after each snapshot")
    reset_histograms: bool = Field(default=True, description="Clear histograms after each snapshot")
    reset_text: bool = Field(default=True, description="Clear text metrics after each snapshot")

    debug: bool = Field(default=False, description="Emit debug diagnostics")
    dump_metrics: bool = Field(default=False, description="Log each submitted payload")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lowercase_keys(value: Any) -> Any:
    """Lowercase dict keys at every depth (Dynaconf uppercases env-sourced keys)."""
    if isinstance(value, dict):
        return {str(k).lower(): _lowercase_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lowercase_keys(item) for item in value]
    return value


def load_settings(config_path: Path) -> MetricsSettings:
    """Load settings from a file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (TRAPMETRICS_*) - highest priority
    2. Config file (YAML, TOML or JSON)
    3. Defaults from the Pydantic schema - lowest priority

    Environment variable format: TRAPMETRICS_CHECK__SUBMISSION_URL for
    nested keys.

    Args:
        config_path: Path to the configuration file

    Returns:
        Validated MetricsSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="TRAPMETRICS",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lowercase_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return MetricsSettings(**raw_config)
