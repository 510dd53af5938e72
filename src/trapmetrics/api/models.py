# src/trapmetrics/api/models.py
"""Typed views of the resource API objects the check manager works with.

Field names follow Python conventions; API attribute names that begin with
an underscore (``_cid``, ``_check_bundle``...) are mapped through aliases.
Unknown attributes are kept (``extra="allow"``) so a bundle fetched from the
API can be sent back in an update without dropping server-side fields.

Models are frozen; edits go through ``model_copy(update=...)``.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_MODEL_CONFIG = ConfigDict(frozen=True, populate_by_name=True, extra="allow")


class BrokerDetail(BaseModel):
    """One broker instance (a broker may be a cluster of several)."""

    model_config = _MODEL_CONFIG

    cn: str = ""
    external_host: str | None = None
    external_port: int | None = None
    ipaddress: str | None = None
    minimum_version_required: int | None = None
    modules: list[str] = Field(default_factory=list)
    port: int | None = None
    status: str = ""
    version: int | None = None


class Broker(BaseModel):
    """A broker (ingestion front-end) as returned by /broker."""

    model_config = _MODEL_CONFIG

    cid: str = Field(alias="_cid")
    name: str = Field(default="", alias="_name")
    details: list[BrokerDetail] = Field(default_factory=list, alias="_details")
    tags: list[str] = Field(default_factory=list, alias="_tags")
    type: str = Field(default="", alias="_type")


class CheckBundleMetric(BaseModel):
    """A metric declared on a check bundle."""

    model_config = _MODEL_CONFIG

    name: str
    type: str
    status: str = "active"
    tags: list[str] = Field(default_factory=list)
    units: str | None = None


class CheckBundle(BaseModel):
    """Check bundle: the remote definition of an ingestion endpoint.

    ``config["submission_url"]`` holds the trap URL once the bundle exists.
    """

    model_config = _MODEL_CONFIG

    cid: str | None = Field(default=None, alias="_cid")
    brokers: list[str] = Field(default_factory=list)
    checks: list[str] = Field(default_factory=list, alias="_checks")
    check_uuids: list[str] = Field(default_factory=list, alias="_check_uuids")
    config: dict[str, Any] = Field(default_factory=dict)
    display_name: str = ""
    metrics: list[CheckBundleMetric] = Field(default_factory=list)
    notes: str | None = None
    period: int = 60
    status: str = "active"
    tags: list[str] = Field(default_factory=list)
    target: str = ""
    timeout: float = 10
    type: str = ""

    @property
    def submission_url(self) -> str | None:
        value = self.config.get("submission_url")
        return str(value) if value else None

    def to_api(self) -> dict[str, Any]:
        """Serialize for a create/update request body."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Check(BaseModel):
    """A check: the per-broker instance of a check bundle."""

    model_config = _MODEL_CONFIG

    cid: str = Field(alias="_cid")
    active: bool = Field(default=True, alias="_active")
    broker_cid: str = Field(default="", alias="_broker")
    check_bundle_cid: str = Field(default="", alias="_check_bundle")
    check_uuid: str = Field(default="", alias="_check_uuid")
    details: dict[str, Any] = Field(default_factory=dict, alias="_details")

    @property
    def id(self) -> int:
        """Numeric id parsed from the cid ("/check/1234" -> 1234)."""
        return int(self.cid.rsplit("/", 1)[-1])
