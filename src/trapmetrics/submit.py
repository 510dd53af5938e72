# src/trapmetrics/submit.py
"""Submitter: delivers packaged metrics to the resolved trap.

Before sending, newly observed metrics are registered on the check. When
registration fails they are left out of this submission (the trap would
drop them anyway) and offered again on the next flush.

Transport errors and 5xx responses are retried with tenacity. When every
retry fails and the trap URL is older than check.max_url_age, the resolver
is asked to refresh the trap; the check may have moved to another broker.
"""

from __future__ import annotations

import json
import threading

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from trapmetrics.api.models import CheckBundleMetric
from trapmetrics.checkmgr.resolver import CheckResolver, ResolverState, Trap
from trapmetrics.contracts import MetricSet, metric_set_to_dict
from trapmetrics.core.config import MetricsSettings
from trapmetrics.core.defaults import get_internal_default
from trapmetrics.errors import SubmissionError

logger = structlog.get_logger(__name__)


class TrapResult(BaseModel):
    """Trap response body."""

    model_config = {"frozen": True}

    stats: int = 0
    filtered: int = 0
    error: str | None = None

    def __str__(self) -> str:
        text = f"stats: {self.stats}, filtered: {self.filtered}"
        if self.error:
            text += f", error: {self.error}"
        return text


class _TransientTrapError(Exception):
    """A submission attempt failed in a way worth retrying."""


class Submitter:
    """POSTs metric sets to the trap resolved by a CheckResolver.

    An httpx client is kept per resolved trap; it is rebuilt when the
    resolver produces a new trap (different URL or TLS context).
    """

    def __init__(
        self,
        resolver: CheckResolver,
        settings: MetricsSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._resolver = resolver
        self._settings = settings.submit
        self._debug = settings.debug
        self._dump_metrics = settings.dump_metrics
        self._transport = transport
        self._client_lock = threading.Lock()
        self._client: httpx.Client | None = None
        self._client_trap: Trap | None = None

    def submit(self, output: MetricSet, new_metrics: dict[str, CheckBundleMetric]) -> TrapResult | None:
        """Register new metrics, then send the metric set.

        Returns:
            The trap's result, or None if nothing was sent (check not ready,
            or nothing left to send)

        Raises:
            SubmissionError: The trap rejected the submission or could not
                be reached after retries
        """
        trap = self._resolver.trap
        if self._resolver.state is not ResolverState.READY or trap is None:
            logger.warning("Check not ready, skipping metric submission")
            return None

        if not self._resolver.register_metrics(new_metrics) and new_metrics:
            output = {name: metric for name, metric in output.items() if name not in new_metrics}
            logger.warning("Metric registration failed, submitting active metrics only", skipped=len(new_metrics))

        if not output:
            return None

        payload = json.dumps(metric_set_to_dict(output))
        if self._dump_metrics:
            logger.info("Metric payload", payload=payload)

        result = self._send(trap, payload, len(output))
        if self._debug:
            logger.debug("Broker result", result=str(result))
        return result

    def _send(self, trap: Trap, payload: str, count: int) -> TrapResult:
        client = self._client_for(trap)
        headers = {
            "Content-Type": str(get_internal_default("submit", "content_type")),
            "Accept": "application/json",
        }
        extensions = {"sni_hostname": trap.server_name} if trap.tls and trap.server_name else None

        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self._settings.max_retries + 1),
                wait=wait_exponential_jitter(initial=self._settings.retry_wait_min, max=self._settings.retry_wait_max),
                retry=retry_if_exception_type(_TransientTrapError),
                reraise=True,
            ):
                with attempt:
                    response = self._post_once(client, trap.url, payload, headers, extensions)
        except _TransientTrapError as e:
            self._resolver.refresh_trap()
            raise SubmissionError(f"Submitting metrics to trap failed after retries: {e}") from e

        # No content: accepted by an agent, which does not report counts
        if response.status_code == 204:
            return TrapResult(stats=count)

        if response.status_code != 200:
            raise SubmissionError(f"Bad response code from trap: {response.status_code} {response.text}")

        try:
            return TrapResult.model_validate_json(response.content)
        except ValidationError as e:
            logger.warning("Unable to parse trap response, proceeding", error=str(e), body=response.text)
            return TrapResult()

    def _post_once(
        self,
        client: httpx.Client,
        url: str,
        payload: str,
        headers: dict[str, str],
        extensions: dict[str, str] | None,
    ) -> httpx.Response:
        try:
            response = client.post(url, content=payload, headers=headers, extensions=extensions)
        except httpx.HTTPError as e:
            raise _TransientTrapError(str(e)) from e
        if response.status_code >= 500:
            raise _TransientTrapError(f"HTTP {response.status_code}: {response.text}")
        return response

    def _client_for(self, trap: Trap) -> httpx.Client:
        with self._client_lock:
            if self._client is None or self._client_trap is not trap:
                if self._client is not None:
                    self._client.close()
                verify = trap.ssl_context if trap.ssl_context is not None else True
                self._client = httpx.Client(verify=verify, timeout=self._settings.timeout, transport=self._transport)
                self._client_trap = trap
            return self._client

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None
                self._client_trap = None
