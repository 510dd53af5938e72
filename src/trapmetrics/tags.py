# src/trapmetrics/tags.py
"""Metric tag helpers.

Two encodings exist:
- check bundle metric tags: plain ``category:value`` strings stored on the
  check (encode_metric_tags)
- stream tags embedded in the metric name as ``name|ST[...]`` with each
  part base64 encoded as ``b"..."`` (encode_metric_stream_tags)
"""

import base64
from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)

_ENCODED_PREFIX = 'b"'
_STREAM_TAG_MARKER = "|ST["


@dataclass(frozen=True, slots=True)
class Tag:
    category: str
    value: str = ""


def encode_metric_tags(metric_name: str, tags: list[Tag]) -> list[str]:
    """Encode tags as sorted, unique ``category:value`` strings.

    Categories are lower-cased with all whitespace removed; values are
    trimmed. Tags with an empty category are dropped.
    """
    unique: set[str] = set()
    for tag in tags:
        category = "".join(tag.category.lower().split())
        if not category:
            logger.warning("Invalid metric tag, empty category", metric=metric_name, tag=repr(tag))
            continue
        unique.add(f"{category}:{tag.value.strip()}")
    return sorted(unique)


def _encode_part(part: str) -> str:
    if part.startswith(_ENCODED_PREFIX):
        return part
    return 'b"' + base64.b64encode(part.encode("utf-8")).decode("ascii") + '"'


def encode_metric_stream_tags(metric_name: str, tags: list[Tag]) -> str:
    """Encode tags for embedding in a metric name.

    Parts already in ``b"..."`` form are kept as they are; empty values stay
    empty.
    """
    encoded: list[str] = []
    for tag in encode_metric_tags(metric_name, tags):
        category, _, value = tag.partition(":")
        encoded.append(_encode_part(category) + ":" + (_encode_part(value) if value else ""))
    return ",".join(encoded)


def metric_name_with_stream_tags(metric_name: str, tags: list[Tag]) -> str:
    """Return ``metric_name|ST[<tags>]``.

    Names that already carry stream tags are returned unchanged; they are
    assumed to be managed by hand.
    """
    if not tags or _STREAM_TAG_MARKER in metric_name:
        return metric_name
    encoded = encode_metric_stream_tags(metric_name, tags)
    if not encoded:
        return metric_name
    return f"{metric_name}{_STREAM_TAG_MARKER}{encoded}]"
