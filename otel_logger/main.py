"""Entry point for otel-logger."""

import io
import logging
import signal
import sys
from typing import Optional

from otel_logger.batcher import LogBatcher
from otel_logger.capture import StreamCapture, spawn_command
from otel_logger.config import Config, load_config
from otel_logger.exceptions import ConfigError, ExportError
from otel_logger.exporter import create_exporter
from otel_logger.extractor import JSONExtractor
from otel_logger.metrics import PipelineStats
from otel_logger.multiline import ContinuationClassifier
from otel_logger.pipeline import process_stream

logger = logging.getLogger("otel_logger")

EXIT_COMMAND_NOT_EXECUTABLE = 126
EXIT_COMMAND_NOT_FOUND = 127


def _exit_status(returncode: int) -> int:
    """Convert a Popen return code to a shell-style exit status."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def _stdin_lines():
    """Decode stdin as UTF-8, replacing invalid bytes like the command pipes do."""
    buffer = getattr(sys.stdin, "buffer", None)
    if buffer is None:
        return sys.stdin
    return io.TextIOWrapper(buffer, encoding="utf-8", errors="replace")


def _make_flush(exporter, stats: PipelineStats):
    def flush(records):
        try:
            exporter.export(records)
        except ExportError:
            stats.record_export(len(records), success=False)
            raise
        stats.record_export(len(records), success=True)
    return flush


def run(config: Config, stats: Optional[PipelineStats] = None) -> int:
    """Wire exporter, batcher and extractor together and process input."""
    stats = stats or PipelineStats()
    exporter = create_exporter(config)
    extractor = JSONExtractor(config.json_prefix, config.field_mappings)
    classifier = ContinuationClassifier(config.continuation_pattern)
    mappings = extractor.field_mappings

    logger.info(
        "Field mappings - Timestamp: %s, Level: %s, Message: %s",
        list(mappings.timestamp_fields),
        list(mappings.level_fields),
        list(mappings.message_fields),
    )

    batcher = LogBatcher(config.batch_size, config.flush_interval, _make_flush(exporter, stats))
    status = 0
    try:
        if config.command:
            logger.info(
                "Running %s and sending logs via %s to %s (batch_size=%d)",
                list(config.command), config.protocol, config.endpoint, config.batch_size,
            )
            try:
                process = spawn_command(config.command)
            except FileNotFoundError as exc:
                logger.error("Cannot start command %s: %s", config.command[0], exc)
                return EXIT_COMMAND_NOT_FOUND
            except OSError as exc:
                logger.error("Cannot start command %s: %s", config.command[0], exc)
                return EXIT_COMMAND_NOT_EXECUTABLE
            capture = StreamCapture(
                extractor,
                batcher.add,
                classifier=classifier,
                passthrough_stdout=config.passthrough_stdout,
                passthrough_stderr=config.passthrough_stderr,
                shutdown_grace=config.shutdown_grace,
                stats=stats,
            )
            status = _exit_status(capture.run(process, config.command))
        else:
            logger.info(
                "Reading logs from stdin and sending via %s to %s (batch_size=%d)",
                config.protocol, config.endpoint, config.batch_size,
            )
            try:
                process_stream(_stdin_lines(), extractor, batcher.add,
                               classifier=classifier, stats=stats)
            except OSError as exc:
                logger.error("Error reading from stdin: %s", exc)
                status = 1
            logger.info("Finished reading logs, flushing remaining entries...")
    finally:
        try:
            batcher.close()
        except ExportError as exc:
            logger.error("Error flushing logs: %s", exc)
            if status == 0:
                status = 1
        exporter.close()
        snapshot = stats.snapshot()
        snapshot["plain_text_entries"] = extractor.plain_text_count
        logger.info("Pipeline stats: %s", snapshot)
    return status


def main(argv: Optional[list[str]] = None) -> int:
    try:
        config = load_config(argv)
    except ConfigError as exc:
        print(f"otel-logger: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=logging.WARNING if config.quiet else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        return run(config)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 128 + signal.SIGINT


if __name__ == "__main__":
    sys.exit(main())
