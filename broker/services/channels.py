"""
Channel Normalizer - turns stored channel values into routable identifiers.

Stored values are either a bare identifier ("general-alerts") or a
serialized record written by the settings form
('{"unique_name": "aws-alerts", "name": "#aws-alerts"}'). They are parsed
once into a ChannelValue at the storage boundary; nothing downstream
inspects the raw string again.
"""

import json

from structlog import get_logger

from broker.models.domain import ChannelValue, RawIdentifier, StructuredRecord

logger = get_logger(__name__)

STRUCTURED_MARKER = "{"


def _string_field(record: dict, key: str) -> str | None:
    value = record.get(key)
    if isinstance(value, str) and value:
        return value
    return None


def parse_channel(raw: str | None) -> ChannelValue | None:
    """
    Parse a stored channel value.

    Returns None for empty or whitespace-only values and for structured
    values that cannot be parsed or carry no usable name. Never raises.
    """
    if raw is None or not raw.strip():
        return None

    if not raw.startswith(STRUCTURED_MARKER):
        return RawIdentifier(raw)

    try:
        record = json.loads(raw)
    except (ValueError, RecursionError):
        logger.warning("channel_value_malformed", length=len(raw))
        return None

    if not isinstance(record, dict):
        logger.warning("channel_value_malformed", length=len(raw))
        return None

    parsed = StructuredRecord(
        unique_name=_string_field(record, "unique_name"),
        display_name=_string_field(record, "name"),
    )
    if not parsed.canonical():
        logger.info("channel_value_without_name")
        return None
    return parsed


def canonical(channel: ChannelValue | None) -> str:
    """Canonical identifier for an already-parsed channel, empty when absent."""
    if channel is None:
        return ""
    return channel.canonical()


def normalize(raw: str | None) -> str:
    """
    Convert a stored channel value into a canonical routable identifier.

    Non-structured values come back verbatim, except that a whitespace-only
    value is not routable and counts as empty.

    normalize("general-alerts")               -> "general-alerts"
    normalize('{"unique_name":"aws-alerts"}') -> "aws-alerts"
    normalize('{"name":"#aws-alerts"}')       -> "aws-alerts"
    normalize("{not json")                    -> ""
    normalize("")                             -> ""
    normalize("   ")                          -> ""
    """
    return canonical(parse_channel(raw))
