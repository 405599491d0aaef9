"""Multiline reassembly — folds indented continuation lines into one logical entry.

A line is a continuation when it matches the continuation pattern (by
default: it starts with a space or a tab) or consists only of closing
brackets. Anything else starts a new entry. Pretty-printed JSON documents
reassemble as a side effect of these line-shape rules; there is no
bracket-depth tracking.
"""

import logging
import re
from typing import Iterable, Iterator, Optional, Pattern, Union

logger = logging.getLogger(__name__)

DEFAULT_CONTINUATION_PATTERN = r"^[ \t]"

# A line holding nothing but closing brackets ends a pretty-printed JSON
# document and belongs to the entry it closes.
_CLOSING_BRACKETS_RE = re.compile(r"^[\]}]+,?\s*$")


class ContinuationClassifier:
    """Decides whether a raw line continues the previous logical entry."""

    def __init__(self, pattern: Union[str, Pattern[str], None] = None):
        if pattern is None:
            pattern = DEFAULT_CONTINUATION_PATTERN
        if isinstance(pattern, str):
            pattern = re.compile(pattern)
        self._pattern = pattern

    @property
    def pattern(self) -> str:
        return self._pattern.pattern

    def is_continuation(self, line: str) -> bool:
        # Blank lines are neither continuations nor entry starts.
        if not line.strip():
            return False
        if self._pattern.search(line) is not None:
            return True
        return _CLOSING_BRACKETS_RE.match(line) is not None


def _strip_newline(line: str) -> str:
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return line


def iter_log_entries(
    lines: Iterable[str],
    classifier: Optional[ContinuationClassifier] = None,
    close_source: bool = False,
) -> Iterator[str]:
    """Yield logical entries reassembled from *lines*.

    The generator is lazy: it reads only as far as needed to complete the
    next entry. Closing it early (``break`` in a for loop, or ``close()``)
    stops reading; with *close_source* the line source is closed as well.

    Continuation lines seen before any entry has started are dropped. If
    the line source raises, the exception propagates and the entry being
    assembled at that point is discarded.
    """
    if classifier is None:
        classifier = ContinuationClassifier()

    current: list[str] = []
    dropped = 0
    try:
        for raw_line in lines:
            line = _strip_newline(raw_line)
            if not line.strip():
                continue

            if classifier.is_continuation(line):
                if current:
                    current.append(line)
                else:
                    dropped += 1
                continue

            if current:
                entry = "\n".join(current)
                current = [line]
                yield entry
            else:
                current = [line]

        if current:
            entry = "\n".join(current)
            current = []
            yield entry
    finally:
        if dropped:
            logger.debug("Dropped %d orphaned continuation line(s)", dropped)
        if close_source and hasattr(lines, "close"):
            lines.close()
