# src/trapmetrics/api/client.py
"""APIClient: the slice of the resource API used for check management.

Every call is synchronous and returns a typed model or raises APIError.
Transient failures (transport errors, 5xx, 429) are retried with tenacity
exponential backoff with jitter; the last APIError surfaces once retries
are exhausted.
"""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog
from pydantic import ValidationError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from trapmetrics.api.models import Broker, Check, CheckBundle
from trapmetrics.core.config import APISettings
from trapmetrics.errors import AmbiguousCheckError, APIError, CheckResolutionError, ConfigurationError

logger = structlog.get_logger(__name__)

_TRAP_PATH_PREFIX = "/module/httptrap/"


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, APIError) and exc.retryable


def _cid_path(kind: str, cid: str | int) -> str:
    """Normalize an id or cid to an API path ("/<kind>/<id>").

    Cids usually come from other API objects, so a malformed one is reported
    as unusable lookup data.

    Raises:
        CheckResolutionError: If the value is neither a numeric id nor a cid of this kind
    """
    value = str(cid)
    if value.startswith(f"/{kind}/"):
        return value
    if not value.isdigit():
        raise CheckResolutionError(f"invalid {kind} cid {cid!r}")
    return f"/{kind}/{value}"


def check_uuid_from_submission_url(submission_url: str) -> str:
    """Extract the check UUID from an httptrap submission URL.

    Trap URLs look like ``https://host:port/module/httptrap/<uuid>/<secret>``.

    Raises:
        ConfigurationError: If the URL is not an httptrap submission URL
    """
    path = urlsplit(submission_url).path
    if not path.startswith(_TRAP_PATH_PREFIX):
        raise ConfigurationError(f"Invalid submission URL '{submission_url}', unrecognized path")
    parts = path[len(_TRAP_PATH_PREFIX) :].split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ConfigurationError(f"Invalid submission URL '{submission_url}', UUID not where expected")
    return parts[0]


class APIClient:
    """Synchronous resource API client.

    Example:
        >>> client = APIClient(APISettings(token_key="abc123"))
        >>> bundle = client.fetch_check_bundle("/check_bundle/1234")
        >>> client.close()
    """

    def __init__(self, settings: APISettings, *, transport: httpx.BaseTransport | None = None) -> None:
        if not settings.token_key:
            raise ConfigurationError("API token is required to use the resource API")
        self._settings = settings
        self._client = httpx.Client(
            base_url=settings.url,
            headers={
                "Accept": "application/json",
                "X-Circonus-Auth-Token": settings.token_key,
                "X-Circonus-App-Name": settings.token_app,
            },
            timeout=settings.timeout,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._settings.url

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> APIClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # =========================================================================
    # Transport
    # =========================================================================

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        """Issue a request with retries and return the decoded JSON body."""
        for attempt in Retrying(
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=wait_exponential_jitter(
                initial=self._settings.retry_wait_min,
                max=self._settings.retry_wait_max,
            ),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                return self._request_once(method, path, params=params, body=body)
        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover

    def _request_once(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None,
        body: dict[str, Any] | None,
    ) -> Any:
        # Relative paths join onto the base URL path: .../v2 + /check/1
        try:
            response = self._client.request(method, path, params=params, json=body)
        except httpx.HTTPError as e:
            logger.debug("API transport error", method=method, path=path, error=str(e))
            raise APIError(method, path, str(e), retryable=True) from e

        status = response.status_code
        if status >= 500 or status == 429:
            raise APIError(method, path, f"HTTP {status}: {response.text}", status_code=status, retryable=True)
        if not 200 <= status < 300:
            raise APIError(method, path, f"HTTP {status}: {response.text}", status_code=status)

        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise APIError(method, path, f"malformed JSON body: {e}", status_code=status) from e

    def _parse(self, model: type[Any], data: Any, method: str, path: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise APIError(method, path, f"unexpected response shape: {e}") from e

    def _parse_list(self, model: type[Any], data: Any, method: str, path: str) -> list[Any]:
        if not isinstance(data, list):
            raise APIError(method, path, f"expected a list, got {type(data).__name__}")
        return [self._parse(model, item, method, path) for item in data]

    # =========================================================================
    # Checks
    # =========================================================================

    def fetch_check_by_id(self, check_id: str | int) -> Check:
        """Fetch a check by numeric id or cid."""
        path = _cid_path("check", check_id)
        result: Check = self._parse(Check, self._request("GET", path), "GET", path)
        return result

    def fetch_check_by_submission_url(self, submission_url: str) -> Check:
        """Find the check whose UUID appears in a submission URL.

        Raises:
            ConfigurationError: The URL is not an httptrap submission URL
            CheckResolutionError: No check carries the URL's UUID
            AmbiguousCheckError: More than one active check carries it
        """
        uuid = check_uuid_from_submission_url(submission_url)
        path = "/check"
        data = self._request("GET", path, params={"f__check_uuid": uuid})
        checks: list[Check] = self._parse_list(Check, data, "GET", path)

        if not checks:
            raise CheckResolutionError(f"No checks found with UUID {uuid}")
        if len(checks) == 1:
            return checks[0]

        active = [check for check in checks if check.active]
        if len(active) > 1:
            raise AmbiguousCheckError(f"Multiple checks with same UUID {uuid}")
        if not active:
            raise CheckResolutionError(f"No active check found with UUID {uuid}")
        return active[0]

    # =========================================================================
    # Check bundles
    # =========================================================================

    def fetch_check_bundle(self, cid: str | int) -> CheckBundle:
        path = _cid_path("check_bundle", cid)
        result: CheckBundle = self._parse(CheckBundle, self._request("GET", path), "GET", path)
        return result

    def search_check_bundles(self, query: str) -> list[CheckBundle]:
        """Search check bundles with the API's search expression syntax."""
        path = "/check_bundle"
        data = self._request("GET", path, params={"search": query})
        return self._parse_list(CheckBundle, data, "GET", path)

    def create_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        path = "/check_bundle"
        data = self._request("POST", path, body=bundle.to_api())
        result: CheckBundle = self._parse(CheckBundle, data, "POST", path)
        return result

    def update_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        """Replace a check bundle's configuration; returns the server's version."""
        if bundle.cid is None:
            raise CheckResolutionError("cannot update a check bundle without a cid")
        path = _cid_path("check_bundle", bundle.cid)
        data = self._request("PUT", path, body=bundle.to_api())
        result: CheckBundle = self._parse(CheckBundle, data, "PUT", path)
        return result

    # =========================================================================
    # Brokers
    # =========================================================================

    def fetch_broker(self, cid: str | int) -> Broker:
        path = _cid_path("broker", cid)
        result: Broker = self._parse(Broker, self._request("GET", path), "GET", path)
        return result

    def fetch_brokers(self) -> list[Broker]:
        path = "/broker"
        return self._parse_list(Broker, self._request("GET", path), "GET", path)

    def fetch_brokers_by_tag(self, tag: str) -> list[Broker]:
        path = "/broker"
        data = self._request("GET", path, params={"f__tags_has": tag})
        return self._parse_list(Broker, data, "GET", path)

    # =========================================================================
    # PKI
    # =========================================================================

    def fetch_ca_certificate(self) -> str:
        """Fetch the broker CA certificate (PEM)."""
        path = "/pki/ca.crt"
        data = self._request("GET", path)
        if not isinstance(data, dict) or not data.get("contents"):
            raise APIError("GET", path, "no certificate contents in response")
        return str(data["contents"])
