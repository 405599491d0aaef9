"""Normalized log record and field-mapping models."""

import datetime
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

# Attribute values are kept to the scalar types OTLP can carry directly.
AttributeValue = Union[str, bool, int, float]

DEFAULT_LEVEL = "info"
DEFAULT_MESSAGE = "Log entry"

STREAM_STDOUT = "stdout"
STREAM_STDERR = "stderr"
STREAM_SYSTEM = "system"

DEFAULT_TIMESTAMP_FIELDS = ("timestamp", "ts", "time", "@timestamp")
DEFAULT_LEVEL_FIELDS = ("level", "lvl", "severity", "priority")
DEFAULT_MESSAGE_FIELDS = ("message", "msg", "text", "content")


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class FieldMappings:
    """Ordered candidate key names for timestamp, level and message.

    The first key in each tuple that is present in a parsed object wins;
    later keys are ignored once one matches.
    """

    timestamp_fields: tuple[str, ...] = DEFAULT_TIMESTAMP_FIELDS
    level_fields: tuple[str, ...] = DEFAULT_LEVEL_FIELDS
    message_fields: tuple[str, ...] = DEFAULT_MESSAGE_FIELDS

    @classmethod
    def with_defaults(
        cls,
        timestamp_fields=None,
        level_fields=None,
        message_fields=None,
    ) -> "FieldMappings":
        """Build mappings, substituting the default list for any empty one."""
        return cls(
            timestamp_fields=tuple(timestamp_fields or DEFAULT_TIMESTAMP_FIELDS),
            level_fields=tuple(level_fields or DEFAULT_LEVEL_FIELDS),
            message_fields=tuple(message_fields or DEFAULT_MESSAGE_FIELDS),
        )


@dataclass
class LogRecord:
    timestamp: datetime.datetime = field(default_factory=utc_now)
    level: str = DEFAULT_LEVEL
    message: str = ""
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    raw: str = ""                  # original logical entry, verbatim
    stream: Optional[str] = None   # stdout, stderr, system or None for stdin


def coerce_attribute(value: Any) -> AttributeValue:
    """Reduce a decoded JSON value to an AttributeValue.

    Scalars pass through; objects, arrays and null become compact JSON text.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (str, int, float)):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def record_to_dict(record: LogRecord) -> dict:
    """Convert a LogRecord to a JSON-serializable dictionary."""
    data = {
        "timestamp": record.timestamp.isoformat(),
        "level": record.level,
        "message": record.message,
        "attributes": dict(record.attributes),
        "raw": record.raw,
    }
    if record.stream is not None:
        data["stream"] = record.stream
    return data
