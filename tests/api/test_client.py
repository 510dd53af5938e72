"""Tests for APIClient (HTTP mocked with respx)."""

import json
from collections.abc import Iterator

import httpx
import pytest
import respx

from tests.helpers.builders import API_URL, TRAP_URL, TRAP_UUID, make_bundle
from trapmetrics.api.client import APIClient, check_uuid_from_submission_url
from trapmetrics.api.models import CheckBundleMetric
from trapmetrics.core.config import APISettings
from trapmetrics.errors import AmbiguousCheckError, APIError, CheckResolutionError, ConfigurationError

BROKER_JSON = {
    "_cid": "/broker/35",
    "_name": "Broker 35",
    "_type": "enterprise",
    "_tags": ["dc:east"],
    "_details": [
        {
            "cn": "broker35.example.com",
            "ipaddress": "10.0.0.5",
            "external_host": None,
            "external_port": 43191,
            "modules": ["httptrap", "json"],
            "status": "active",
            "version": 1700000000,
        }
    ],
}

BUNDLE_JSON = {
    "_cid": "/check_bundle/1234",
    "_checks": ["/check/77"],
    "_check_uuids": [TRAP_UUID],
    "last_modified": 1700000000,
    "brokers": ["/broker/35"],
    "config": {"submission_url": TRAP_URL, "async_metrics": "true"},
    "display_name": "host1:app /httptrap",
    "metrics": [{"name": "requests", "type": "numeric", "status": "active", "tags": []}],
    "period": 60,
    "status": "active",
    "tags": ["service:app"],
    "target": "host1:app",
    "timeout": 10,
    "type": "httptrap",
}


def _check_json(cid: str = "/check/77", active: bool = True) -> dict[str, object]:
    return {
        "_cid": cid,
        "_active": active,
        "_broker": "/broker/35",
        "_check_bundle": "/check_bundle/1234",
        "_check_uuid": TRAP_UUID,
        "_details": {"submission_url": TRAP_URL},
    }


@pytest.fixture
def client() -> Iterator[APIClient]:
    settings = APISettings(
        url=API_URL,
        token_key="test-token",
        token_app="myapp",
        max_retries=2,
        retry_wait_min=0,
        retry_wait_max=0,
    )
    with APIClient(settings) as api:
        yield api


def test_token_required() -> None:
    with pytest.raises(ConfigurationError, match="API token is required"):
        APIClient(APISettings())


class TestRequests:
    @respx.mock
    def test_auth_headers_sent(self, client: APIClient) -> None:
        route = respx.get(f"{API_URL}/broker/35").mock(return_value=httpx.Response(200, json=BROKER_JSON))

        client.fetch_broker(35)

        headers = route.calls.last.request.headers
        assert headers["X-Circonus-Auth-Token"] == "test-token"
        assert headers["X-Circonus-App-Name"] == "myapp"
        assert headers["Accept"] == "application/json"

    @respx.mock
    def test_server_errors_retried(self, client: APIClient) -> None:
        route = respx.get(f"{API_URL}/broker/35").mock(
            side_effect=[httpx.Response(500, text="oops"), httpx.Response(200, json=BROKER_JSON)]
        )

        assert client.fetch_broker("/broker/35").cid == "/broker/35"
        assert route.call_count == 2

    @respx.mock
    def test_rate_limit_retried_until_exhausted(self, client: APIClient) -> None:
        route = respx.get(f"{API_URL}/broker/35").mock(return_value=httpx.Response(429, text="slow down"))

        with pytest.raises(APIError) as exc_info:
            client.fetch_broker(35)

        assert route.call_count == 3
        assert exc_info.value.status_code == 429
        assert exc_info.value.retryable is True

    @respx.mock
    def test_client_errors_not_retried(self, client: APIClient) -> None:
        route = respx.get(f"{API_URL}/broker/35").mock(return_value=httpx.Response(404, text="not found"))

        with pytest.raises(APIError, match="HTTP 404"):
            client.fetch_broker(35)

        assert route.call_count == 1

    @respx.mock
    def test_transport_errors_retried(self, client: APIClient) -> None:
        route = respx.get(f"{API_URL}/broker/35").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(APIError, match="refused"):
            client.fetch_broker(35)

        assert route.call_count == 3

    @respx.mock
    def test_malformed_json(self, client: APIClient) -> None:
        respx.get(f"{API_URL}/broker/35").mock(return_value=httpx.Response(200, text="<html>"))

        with pytest.raises(APIError, match="malformed JSON"):
            client.fetch_broker(35)

    @respx.mock
    def test_unexpected_shape(self, client: APIClient) -> None:
        respx.get(f"{API_URL}/broker").mock(return_value=httpx.Response(200, json={"not": "a list"}))

        with pytest.raises(APIError, match="expected a list"):
            client.fetch_brokers()

    def test_invalid_cid_rejected(self, client: APIClient) -> None:
        with pytest.raises(CheckResolutionError, match="invalid broker cid"):
            client.fetch_broker("/check/1")


class TestModels:
    @respx.mock
    def test_broker_aliases_parsed(self, client: APIClient) -> None:
        respx.get(f"{API_URL}/broker").mock(return_value=httpx.Response(200, json=[BROKER_JSON]))

        (broker,) = client.fetch_brokers()

        assert broker.cid == "/broker/35"
        assert broker.name == "Broker 35"
        assert broker.type == "enterprise"
        assert broker.details[0].cn == "broker35.example.com"
        assert broker.details[0].modules == ["httptrap", "json"]

    @respx.mock
    def test_bundle_parsed_and_unknown_fields_kept(self, client: APIClient) -> None:
        respx.get(f"{API_URL}/check_bundle/1234").mock(return_value=httpx.Response(200, json=BUNDLE_JSON))

        bundle = client.fetch_check_bundle(1234)

        assert bundle.cid == "/check_bundle/1234"
        assert bundle.submission_url == TRAP_URL
        assert bundle.check_uuids == [TRAP_UUID]
        assert bundle.metrics[0].name == "requests"
        assert bundle.to_api()["last_modified"] == 1700000000

    @respx.mock
    def test_check_id(self, client: APIClient) -> None:
        respx.get(f"{API_URL}/check/77").mock(return_value=httpx.Response(200, json=_check_json()))

        check = client.fetch_check_by_id(77)

        assert check.id == 77
        assert check.check_bundle_cid == "/check_bundle/1234"


class TestCheckBundles:
    @respx.mock
    def test_search_sends_query(self, client: APIClient) -> None:
        route = respx.get(f"{API_URL}/check_bundle").mock(return_value=httpx.Response(200, json=[BUNDLE_JSON]))

        bundles = client.search_check_bundles('(active:1)(type:"httptrap")')

        assert len(bundles) == 1
        assert route.calls.last.request.url.params["search"] == '(active:1)(type:"httptrap")'

    @respx.mock
    def test_create_posts_bundle(self, client: APIClient) -> None:
        route = respx.post(f"{API_URL}/check_bundle").mock(return_value=httpx.Response(200, json=BUNDLE_JSON))
        bundle = make_bundle(cid=None)

        created = client.create_check_bundle(bundle)

        body = json.loads(route.calls.last.request.content)
        assert "_cid" not in body
        assert body["brokers"] == ["/broker/35"]
        assert created.cid == "/check_bundle/1234"

    @respx.mock
    def test_update_puts_to_cid(self, client: APIClient) -> None:
        route = respx.put(f"{API_URL}/check_bundle/1234").mock(return_value=httpx.Response(200, json=BUNDLE_JSON))
        bundle = make_bundle(metrics=[CheckBundleMetric(name="latency", type="histogram")])

        client.update_check_bundle(bundle)

        body = json.loads(route.calls.last.request.content)
        assert body["_cid"] == "/check_bundle/1234"
        assert body["metrics"] == [{"name": "latency", "type": "histogram", "status": "active", "tags": []}]

    def test_update_requires_cid(self, client: APIClient) -> None:
        with pytest.raises(CheckResolutionError, match="without a cid"):
            client.update_check_bundle(make_bundle(cid=None))


class TestSubmissionURLLookup:
    def test_uuid_extracted(self) -> None:
        assert check_uuid_from_submission_url(TRAP_URL) == TRAP_UUID

    @pytest.mark.parametrize(
        "url",
        [
            "https://10.0.0.5:43191/write/app",
            "https://10.0.0.5:43191/module/httptrap/",
            f"https://10.0.0.5:43191/module/httptrap/{TRAP_UUID}",
        ],
    )
    def test_bad_urls_rejected_without_request(self, client: APIClient, url: str) -> None:
        with respx.mock(assert_all_called=False) as mock:
            route = mock.get(f"{API_URL}/check")
            with pytest.raises(ConfigurationError, match="Invalid submission URL"):
                client.fetch_check_by_submission_url(url)
            assert not route.called

    @respx.mock
    def test_single_check(self, client: APIClient) -> None:
        route = respx.get(f"{API_URL}/check").mock(return_value=httpx.Response(200, json=[_check_json()]))

        check = client.fetch_check_by_submission_url(TRAP_URL)

        assert check.cid == "/check/77"
        assert route.calls.last.request.url.params["f__check_uuid"] == TRAP_UUID

    @respx.mock
    def test_no_checks(self, client: APIClient) -> None:
        respx.get(f"{API_URL}/check").mock(return_value=httpx.Response(200, json=[]))

        with pytest.raises(CheckResolutionError, match="No checks found"):
            client.fetch_check_by_submission_url(TRAP_URL)

    @respx.mock
    def test_one_active_among_several(self, client: APIClient) -> None:
        checks = [_check_json("/check/1", active=False), _check_json("/check/2")]
        respx.get(f"{API_URL}/check").mock(return_value=httpx.Response(200, json=checks))

        assert client.fetch_check_by_submission_url(TRAP_URL).cid == "/check/2"

    @respx.mock
    def test_several_active(self, client: APIClient) -> None:
        checks = [_check_json("/check/1"), _check_json("/check/2")]
        respx.get(f"{API_URL}/check").mock(return_value=httpx.Response(200, json=checks))

        with pytest.raises(AmbiguousCheckError, match="Multiple checks"):
            client.fetch_check_by_submission_url(TRAP_URL)

    @respx.mock
    def test_none_active(self, client: APIClient) -> None:
        checks = [_check_json("/check/1", active=False), _check_json("/check/2", active=False)]
        respx.get(f"{API_URL}/check").mock(return_value=httpx.Response(200, json=checks))

        with pytest.raises(CheckResolutionError, match="No active check"):
            client.fetch_check_by_submission_url(TRAP_URL)


class TestBrokersAndPKI:
    @respx.mock
    def test_brokers_by_tag(self, client: APIClient) -> None:
        route = respx.get(f"{API_URL}/broker").mock(return_value=httpx.Response(200, json=[BROKER_JSON]))

        client.fetch_brokers_by_tag("dc:east")

        assert route.calls.last.request.url.params["f__tags_has"] == "dc:east"

    @respx.mock
    def test_ca_certificate(self, client: APIClient) -> None:
        pem = "-----BEGIN CERTIFICATE-----\nabc\n-----END CERTIFICATE-----\n"
        respx.get(f"{API_URL}/pki/ca.crt").mock(return_value=httpx.Response(200, json={"contents": pem}))

        assert client.fetch_ca_certificate() == pem

    @respx.mock
    def test_ca_certificate_missing_contents(self, client: APIClient) -> None:
        respx.get(f"{API_URL}/pki/ca.crt").mock(return_value=httpx.Response(200, json={}))

        with pytest.raises(APIError, match="no certificate contents"):
            client.fetch_ca_certificate()
