"""Field-mapped extraction of normalized records from logical log entries.

Parsing order:
  1. Strip an optional prefix (timestamp, bracketed tag, ...) with a regex;
     the last capture group, when non-empty, is the JSON candidate.
  2. Decode the candidate as a JSON object; anything else is plain text.
  3. Resolve timestamp, level and message from the configured key lists,
     first listed key present wins.
  4. Whatever keys remain become attributes.
"""

import datetime
import json
import logging
import re
import threading
from typing import Any, Optional

from otel_logger.models import (
    DEFAULT_LEVEL,
    DEFAULT_MESSAGE,
    FieldMappings,
    LogRecord,
    coerce_attribute,
    utc_now,
)

logger = logging.getLogger(__name__)

# Optional leading ISO-8601 timestamp, then the payload.
DEFAULT_PREFIX_PATTERN = (
    r"^(\d{4}-\d{2}-\d{2}[T\s]\d{2}:\d{2}:\d{2}[.\d]*[Z\-+\d:]*\s*)?(.*)$"
)

_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S%z",       # RFC3339, "Z" or explicit offset
    "%Y-%m-%dT%H:%M:%S.%f%z",    # RFC3339 with fractional seconds
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
)

# strptime's %f takes at most six digits; nanosecond stamps are truncated.
_LONG_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse a timestamp string against the supported formats, in order.

    Values without an offset are taken as UTC. Raises ValueError when no
    format matches.
    """
    text = _LONG_FRACTION_RE.sub(r"\1", value.strip())
    for fmt in _TIMESTAMP_FORMATS:
        try:
            dt = datetime.datetime.strptime(text, fmt)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=datetime.timezone.utc)
        return dt
    raise ValueError(f"unable to parse timestamp: {value}")


def _epoch_to_datetime(value: float) -> Optional[datetime.datetime]:
    try:
        return datetime.datetime.fromtimestamp(value, tz=datetime.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class JSONExtractor:
    """Turns one logical entry into a LogRecord using prioritized field mappings."""

    def __init__(
        self,
        prefix_pattern: Optional[str] = None,
        field_mappings: Optional[FieldMappings] = None,
    ):
        if prefix_pattern:
            self._prefix_re = re.compile(prefix_pattern)
        else:
            self._prefix_re = re.compile(DEFAULT_PREFIX_PATTERN, re.DOTALL)
        self._mappings = field_mappings or FieldMappings()
        self._lock = threading.Lock()
        self._plain_text_count = 0

    @property
    def field_mappings(self) -> FieldMappings:
        return self._mappings

    @property
    def plain_text_count(self) -> int:
        """Number of entries that fell back to plain-text handling."""
        with self._lock:
            return self._plain_text_count

    def extract_json(self, entry: str) -> str:
        """Return the JSON candidate inside *entry* (or *entry* itself)."""
        m = self._prefix_re.search(entry)
        if m is None:
            return entry
        groups = m.groups()
        if groups and groups[-1]:
            return groups[-1]
        return entry

    def parse(self, entry: str, stream: Optional[str] = None) -> LogRecord:
        """Parse *entry* into a LogRecord. Never raises on malformed input."""
        payload = self.extract_json(entry)
        try:
            data = json.loads(payload)
        except (ValueError, RecursionError):
            # ValueError also covers oversized integers, not only syntax errors
            data = None

        if not isinstance(data, dict):
            with self._lock:
                self._plain_text_count += 1
            return LogRecord(
                timestamp=utc_now(),
                level=DEFAULT_LEVEL,
                message=entry.strip(),
                attributes={},
                raw=entry,
                stream=stream,
            )

        timestamp = self._take_timestamp(data)
        level = self._take_string(data, self._mappings.level_fields)
        message = self._take_string(data, self._mappings.message_fields)

        return LogRecord(
            timestamp=timestamp or utc_now(),
            level=level if level is not None else DEFAULT_LEVEL,
            message=message if message is not None else DEFAULT_MESSAGE,
            attributes={k: coerce_attribute(v) for k, v in data.items()},
            raw=entry,
            stream=stream,
        )

    def _take_timestamp(self, data: dict) -> Optional[datetime.datetime]:
        # The first string or numeric candidate is consumed even when it
        # fails to parse; the caller then falls back to the current time.
        for key in self._mappings.timestamp_fields:
            value = data.get(key)
            if isinstance(value, str):
                del data[key]
                try:
                    return parse_timestamp(value)
                except ValueError:
                    logger.debug("Unparseable timestamp in %r: %r", key, value)
                    return None
            if _is_number(value):
                del data[key]
                return _epoch_to_datetime(value)
        return None

    @staticmethod
    def _take_string(data: dict, keys: tuple[str, ...]) -> Optional[str]:
        for key in keys:
            value = data.get(key)
            if isinstance(value, str):
                del data[key]
                return value
        return None
