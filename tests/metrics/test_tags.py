"""Tests for check tag and stream tag encoding."""

import base64

from trapmetrics.tags import Tag, encode_metric_stream_tags, encode_metric_tags, metric_name_with_stream_tags


def _b64(text: str) -> str:
    return 'b"' + base64.b64encode(text.encode()).decode() + '"'


class TestEncodeMetricTags:
    def test_normalizes_category_and_value(self) -> None:
        tags = [Tag(" Service Name ", "  api  "), Tag("ENV", "prod")]

        assert encode_metric_tags("requests", tags) == ["env:prod", "servicename:api"]

    def test_duplicates_collapse(self) -> None:
        tags = [Tag("env", "prod"), Tag("Env", "prod "), Tag("env", "dev")]

        assert encode_metric_tags("requests", tags) == ["env:dev", "env:prod"]

    def test_empty_category_dropped(self) -> None:
        assert encode_metric_tags("requests", [Tag("  ", "x"), Tag("env", "")]) == ["env:"]

    def test_no_tags(self) -> None:
        assert encode_metric_tags("requests", []) == []


class TestStreamTags:
    def test_parts_are_base64_encoded(self) -> None:
        encoded = encode_metric_stream_tags("requests", [Tag("env", "prod"), Tag("az", "us-east-1a")])

        assert encoded == f"{_b64('az')}:{_b64('us-east-1a')},{_b64('env')}:{_b64('prod')}"

    def test_empty_value_left_empty(self) -> None:
        assert encode_metric_stream_tags("requests", [Tag("canary")]) == f"{_b64('canary')}:"

    def test_pre_encoded_value_kept(self) -> None:
        value = _b64("prod")

        assert encode_metric_stream_tags("requests", [Tag("env", value)]) == f"{_b64('env')}:{value}"

    def test_name_with_stream_tags(self) -> None:
        name = metric_name_with_stream_tags("requests", [Tag("env", "prod")])

        assert name == f"requests|ST[{_b64('env')}:{_b64('prod')}]"

    def test_name_without_tags_unchanged(self) -> None:
        assert metric_name_with_stream_tags("requests", []) == "requests"

    def test_name_with_only_invalid_tags_unchanged(self) -> None:
        assert metric_name_with_stream_tags("requests", [Tag(" ", "x")]) == "requests"

    def test_existing_stream_tags_left_alone(self) -> None:
        name = 'requests|ST[b"ZW52":b"cHJvZA=="]'

        assert metric_name_with_stream_tags(name, [Tag("az", "a")]) == name
