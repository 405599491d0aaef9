"""Single-stream pipeline: reassemble entries, parse them, hand records to a sink."""

import logging
from typing import Callable, Iterable, Optional, TextIO

from otel_logger.extractor import JSONExtractor
from otel_logger.metrics import PipelineStats
from otel_logger.models import LogRecord
from otel_logger.multiline import ContinuationClassifier, iter_log_entries

logger = logging.getLogger(__name__)

RecordSink = Callable[[LogRecord], None]


def process_stream(
    lines: Iterable[str],
    extractor: JSONExtractor,
    sink: RecordSink,
    classifier: Optional[ContinuationClassifier] = None,
    stream: Optional[str] = None,
    echo: Optional[TextIO] = None,
    stats: Optional[PipelineStats] = None,
) -> int:
    """Run every logical entry from *lines* through *extractor* into *sink*.

    When *echo* is given each raw entry is written to it before parsing.
    A parse or sink failure is logged and the stream keeps going; failures
    of the line source propagate. Returns the number of entries processed.
    """
    count = 0
    for entry in iter_log_entries(lines, classifier):
        if echo is not None:
            echo.write(entry + "\n")
            echo.flush()

        count += 1
        if stats is not None:
            stats.record_entry(stream)

        try:
            record = extractor.parse(entry, stream=stream)
        except Exception as exc:
            logger.error("Error parsing log entry: %s", exc)
            continue

        try:
            sink(record)
        except Exception as exc:
            logger.error("Error adding log entry to batch: %s", exc)
    return count
