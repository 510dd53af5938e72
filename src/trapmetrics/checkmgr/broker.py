# src/trapmetrics/checkmgr/broker.py
"""BrokerSelector: choose the broker a new check is created on.

Candidates come from one of three sources:
1. A pinned broker id (settings.broker.id) - validated, never probed, and a
   hard error if unusable
2. Brokers carrying settings.broker.select_tag
3. Every broker visible to the API token

A broker is viable when at least one of its details is active, supports the
required check type (and client version, when configured), and accepts a
TCP connection within max_response_time. Among viable brokers enterprise
brokers are preferred; the final pick is uniformly random.
"""

from __future__ import annotations

import ipaddress
import random
import socket
from urllib.parse import urlsplit

import structlog

from trapmetrics.api.client import APIClient
from trapmetrics.api.models import Broker, BrokerDetail
from trapmetrics.core.config import BrokerSettings
from trapmetrics.core.defaults import get_internal_default
from trapmetrics.errors import BrokerSelectionError, CheckResolutionError

logger = structlog.get_logger(__name__)

_ENTERPRISE = "enterprise"


def get_broker_cn(broker: Broker, submission_url: str) -> str:
    """Return the TLS server name to present when submitting to a broker.

    Broker certificates carry the broker's canonical name, while submission
    URLs may use an IP address. A hostname URL presents its own host; an IP
    URL presents the cn of the broker detail with that address.

    Raises:
        CheckResolutionError: If an IP URL matches none of the broker's details
    """
    parts = urlsplit(submission_url)
    host = parts.hostname or ""
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return host

    for detail in broker.details:
        if detail.ipaddress == host and detail.cn:
            return detail.cn
    raise CheckResolutionError(f"Unable to match URL host ({parts.netloc}) to Broker")


class BrokerSelector:
    """Selects a viable broker for check creation.

    Example:
        >>> selector = BrokerSelector(client, BrokerSettings(select_tag="dc:east"), "httptrap")
        >>> broker = selector.select()
        >>> broker.cid
        '/broker/35'
    """

    def __init__(self, client: APIClient, settings: BrokerSettings, check_type: str) -> None:
        self._client = client
        self._settings = settings
        self._check_type = check_type
        self._default_port = int(get_internal_default("broker", "default_port"))

    def select(self) -> Broker:
        """Return the broker to create a check on.

        Raises:
            BrokerSelectionError: No candidate is viable, or the pinned broker
                is not
            APIError: Fetching candidates failed
        """
        if self._settings.id is not None:
            return self._select_pinned(self._settings.id)

        if self._settings.select_tag:
            candidates = self._client.fetch_brokers_by_tag(self._settings.select_tag)
        else:
            candidates = self._client.fetch_brokers()

        if not candidates:
            raise BrokerSelectionError("zero brokers found")

        viable: list[Broker] = []
        last_reason = ""
        for broker in candidates:
            reason = self.invalid_reason(broker, probe=True)
            if reason is None:
                viable.append(broker)
            else:
                logger.debug("Broker not viable", broker=broker.cid, name=broker.name, reason=reason)
                last_reason = reason

        if not viable:
            raise BrokerSelectionError(f"found {len(candidates)} broker(s), zero are valid ({last_reason})")

        enterprise = [broker for broker in viable if broker.type == _ENTERPRISE]
        if enterprise:
            viable = enterprise

        selected = random.choice(viable)
        logger.debug("Broker selected", broker=selected.cid, name=selected.name, viable=len(viable))
        return selected

    def _select_pinned(self, broker_id: int) -> Broker:
        broker = self._client.fetch_broker(broker_id)
        reason = self.invalid_reason(broker, probe=False)
        if reason is not None:
            raise BrokerSelectionError(f"{broker.name or broker.cid}: {reason}", broker=broker_id)
        return broker

    def invalid_reason(self, broker: Broker, *, probe: bool) -> str | None:
        """Return why a broker is not viable, or None if it is.

        Details are checked in order: status, check type support, client
        version, then (when probing) reachability. The broker is viable as
        soon as one detail passes every check.
        """
        if not broker.details:
            return "no broker details"

        reason = ""
        for detail in broker.details:
            if detail.status != "active":
                reason = "not active"
                continue
            if self._check_type not in detail.modules:
                reason = f"does not support check type '{self._check_type}'"
                continue
            required = detail.minimum_version_required
            client_version = self._settings.client_version
            if client_version is not None and required is not None and required > client_version:
                reason = f"requires client version {required}"
                continue
            if probe:
                probe_failure = self._probe(detail)
                if probe_failure is not None:
                    reason = probe_failure
                    continue
            return None
        return reason

    def _probe(self, detail: BrokerDetail) -> str | None:
        """Try a TCP connection to a broker detail within max_response_time."""
        host = detail.external_host or detail.ipaddress
        if not host:
            return "no address to probe"
        port = detail.external_port or detail.port or self._default_port
        try:
            with socket.create_connection((host, port), timeout=self._settings.max_response_time):
                return None
        except OSError as e:
            return f"unreachable at {host}:{port} within {self._settings.max_response_time}s ({e})"
