"""Tests for Submitter trap delivery (HTTP mocked with respx)."""

import json
import ssl
from unittest.mock import Mock

import httpx
import pytest
import respx

from trapmetrics.api.models import CheckBundleMetric
from trapmetrics.checkmgr.resolver import ResolverState, Trap
from trapmetrics.contracts import Metric, WireType
from trapmetrics.core.config import MetricsSettings, SubmitSettings
from trapmetrics.errors import SubmissionError
from trapmetrics.submit import Submitter, TrapResult

PLAIN_TRAP = "http://127.0.0.1:56104/write/test"
TLS_TRAP = "https://10.0.0.5:43191/module/httptrap/abc/secret"


@pytest.fixture
def settings() -> MetricsSettings:
    return MetricsSettings(submit=SubmitSettings(max_retries=1, retry_wait_min=0, retry_wait_max=0))


@pytest.fixture
def submitter(mock_resolver: Mock, settings: MetricsSettings) -> Submitter:
    return Submitter(mock_resolver, settings)


def _output() -> dict[str, Metric]:
    return {
        "requests": Metric(WireType.UINT64, 3, 1700000000000),
        "latency": Metric(WireType.HISTOGRAM, ["H[1.0e+00]=1"]),
    }


class TestDelivery:
    @respx.mock
    def test_posts_json_payload(self, submitter: Submitter) -> None:
        route = respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(200, json={"stats": 2}))

        result = submitter.submit(_output(), {})

        assert result == TrapResult(stats=2)
        request = route.calls.last.request
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {
            "requests": {"_type": "L", "_value": 3, "_ts": 1700000000000},
            "latency": {"_type": "h", "_value": ["H[1.0e+00]=1"]},
        }

    @respx.mock
    def test_no_content_reports_all_metrics(self, submitter: Submitter) -> None:
        respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(204))

        result = submitter.submit(_output(), {})

        assert result is not None
        assert result.stats == 2

    @respx.mock
    def test_trap_result_with_filtered_and_error(self, submitter: Submitter) -> None:
        respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(200, json={"stats": 1, "filtered": 1, "error": "x"}))

        result = submitter.submit(_output(), {})

        assert result == TrapResult(stats=1, filtered=1, error="x")
        assert str(result) == "stats: 1, filtered: 1, error: x"

    @respx.mock
    def test_unparseable_body_is_tolerated(self, submitter: Submitter) -> None:
        respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(200, text="not json"))

        assert submitter.submit(_output(), {}) == TrapResult()

    @respx.mock
    def test_tls_trap_presents_server_name(self, mock_resolver: Mock, settings: MetricsSettings) -> None:
        mock_resolver.trap = Trap(
            url=TLS_TRAP,
            tls=True,
            server_name="broker35.example.com",
            ssl_context=ssl.create_default_context(),
        )
        route = respx.post(TLS_TRAP).mock(return_value=httpx.Response(200, json={"stats": 2}))

        Submitter(mock_resolver, settings).submit(_output(), {})

        assert route.calls.last.request.extensions["sni_hostname"] == "broker35.example.com"


class TestRegistration:
    @respx.mock
    def test_new_metrics_registered_before_send(self, submitter: Submitter, mock_resolver: Mock) -> None:
        respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(200, json={"stats": 2}))
        new = {"latency": CheckBundleMetric(name="latency", type="histogram")}

        submitter.submit(_output(), new)

        mock_resolver.register_metrics.assert_called_once_with(new)

    @respx.mock
    def test_failed_registration_drops_new_metrics(self, submitter: Submitter, mock_resolver: Mock) -> None:
        mock_resolver.register_metrics.return_value = False
        route = respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(200, json={"stats": 1}))
        new = {"latency": CheckBundleMetric(name="latency", type="histogram")}

        submitter.submit(_output(), new)

        assert set(json.loads(route.calls.last.request.content)) == {"requests"}

    @respx.mock
    def test_nothing_left_after_failed_registration(self, submitter: Submitter, mock_resolver: Mock) -> None:
        mock_resolver.register_metrics.return_value = False
        route = respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(200, json={"stats": 1}))
        output = {"latency": Metric(WireType.HISTOGRAM, ["H[1.0e+00]=1"])}

        assert submitter.submit(output, {"latency": CheckBundleMetric(name="latency", type="histogram")}) is None
        assert not route.called

    @respx.mock
    def test_not_ready_skips_submission(self, submitter: Submitter, mock_resolver: Mock) -> None:
        mock_resolver.state = ResolverState.UNRESOLVED
        route = respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(200, json={"stats": 2}))

        assert submitter.submit(_output(), {}) is None
        assert not route.called
        mock_resolver.register_metrics.assert_not_called()


class TestFailures:
    @respx.mock
    def test_server_errors_retried_then_trap_refreshed(self, submitter: Submitter, mock_resolver: Mock) -> None:
        route = respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(503, text="unavailable"))

        with pytest.raises(SubmissionError, match="after retries"):
            submitter.submit(_output(), {})

        assert route.call_count == 2
        mock_resolver.refresh_trap.assert_called_once()

    @respx.mock
    def test_transport_error_retried(self, submitter: Submitter) -> None:
        route = respx.post(PLAIN_TRAP).mock(
            side_effect=[httpx.ConnectError("refused"), httpx.Response(200, json={"stats": 2})]
        )

        result = submitter.submit(_output(), {})

        assert result == TrapResult(stats=2)
        assert route.call_count == 2

    @respx.mock
    def test_client_error_not_retried(self, submitter: Submitter, mock_resolver: Mock) -> None:
        route = respx.post(PLAIN_TRAP).mock(return_value=httpx.Response(400, text="bad payload"))

        with pytest.raises(SubmissionError, match="400"):
            submitter.submit(_output(), {})

        assert route.call_count == 1
        mock_resolver.refresh_trap.assert_not_called()
