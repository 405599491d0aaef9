"""Stream capture for a wrapped child process.

stdout and stderr each get their own reader thread running the
reassemble -> parse -> sink pipeline. The supervising thread waits on one
event queue fed by a waiter thread (child exit) and by the signal handlers
(SIGINT / SIGTERM); handlers only enqueue, the supervisor alone talks to
the child.
"""

import logging
import queue
import shlex
import signal
import subprocess
import sys
import threading
import time
from typing import Optional, Sequence

from otel_logger.extractor import JSONExtractor
from otel_logger.metrics import PipelineStats
from otel_logger.models import (
    STREAM_STDERR,
    STREAM_STDOUT,
    STREAM_SYSTEM,
    LogRecord,
    utc_now,
)
from otel_logger.multiline import ContinuationClassifier
from otel_logger.pipeline import RecordSink, process_stream

logger = logging.getLogger(__name__)

FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_EXIT = "exit"
_SIGNAL = "signal"


def spawn_command(argv: Sequence[str]) -> subprocess.Popen:
    """Start *argv* with piped, line-buffered text stdout and stderr."""
    return subprocess.Popen(
        list(argv),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    )


class StreamCapture:
    """Runs the log pipeline over both output streams of a child process."""

    def __init__(
        self,
        extractor: JSONExtractor,
        sink: RecordSink,
        classifier: Optional[ContinuationClassifier] = None,
        passthrough_stdout: bool = False,
        passthrough_stderr: bool = False,
        shutdown_grace: float = 5.0,
        forward_signals: bool = True,
        stats: Optional[PipelineStats] = None,
    ):
        self._extractor = extractor
        self._sink = sink
        self._classifier = classifier or ContinuationClassifier()
        self._passthrough_stdout = passthrough_stdout
        self._passthrough_stderr = passthrough_stderr
        self._shutdown_grace = shutdown_grace
        self._forward_signals = forward_signals
        self._stats = stats

    def run(self, process, command: Sequence[str]) -> int:
        """Supervise *process* until it exits and both streams are drained.

        Emits one ``system`` record describing the exit and returns the
        child's exit code (negative when it died from a signal).
        """
        events: queue.SimpleQueue = queue.SimpleQueue()

        # Installed before any thread starts; a signal from here on reaches the child.
        previous_handlers = self._install_signal_handlers(events)
        try:
            readers = [
                self._start_reader(
                    process.stdout,
                    STREAM_STDOUT,
                    sys.stdout if self._passthrough_stdout else None,
                ),
                self._start_reader(
                    process.stderr,
                    STREAM_STDERR,
                    sys.stderr if self._passthrough_stderr else None,
                ),
            ]

            waiter = threading.Thread(
                target=lambda: events.put((_EXIT, process.wait())),
                name="child-waiter",
                daemon=True,
            )
            waiter.start()

            exit_code = self._supervise(process, events)
        finally:
            self._restore_signal_handlers(previous_handlers)

        # Output still sitting in the pipes is processed before we report.
        for reader in readers:
            if reader is not None:
                reader.join()

        logger.info("Command exited with code %d", exit_code)
        self._emit_exit_record(exit_code, command)
        return exit_code

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def _start_reader(self, pipe, stream_name: str, echo) -> Optional[threading.Thread]:
        if pipe is None:
            return None
        thread = threading.Thread(
            target=self._read_stream,
            args=(pipe, stream_name, echo),
            name=f"{stream_name}-reader",
            daemon=True,
        )
        thread.start()
        return thread

    def _read_stream(self, pipe, stream_name: str, echo) -> None:
        try:
            count = process_stream(
                pipe,
                self._extractor,
                self._sink,
                classifier=self._classifier,
                stream=stream_name,
                echo=echo,
                stats=self._stats,
            )
            logger.debug("%s drained after %d entries", stream_name, count)
        except (OSError, ValueError) as exc:
            logger.error("Error reading %s: %s", stream_name, exc)
        finally:
            pipe.close()

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _supervise(self, process, events: queue.SimpleQueue) -> int:
        deadline = None
        while True:
            timeout = None
            if deadline is not None:
                timeout = max(0.0, deadline - time.monotonic())
            try:
                kind, value = events.get(timeout=timeout)
            except queue.Empty:
                logger.warning(
                    "Command did not exit within %.1fs of the signal, killing it",
                    self._shutdown_grace,
                )
                process.kill()
                deadline = None
                continue

            if kind == _EXIT:
                return value

            logger.info("Forwarding signal %d to command", value)
            try:
                process.send_signal(value)
            except ProcessLookupError:
                pass
            if deadline is None:
                deadline = time.monotonic() + self._shutdown_grace

    def _install_signal_handlers(self, events: queue.SimpleQueue) -> dict:
        # signal.signal() is only allowed from the main thread.
        if not self._forward_signals:
            return {}
        if threading.current_thread() is not threading.main_thread():
            return {}

        def enqueue(signum, frame):
            events.put((_SIGNAL, signum))

        previous = {}
        for sig in FORWARDED_SIGNALS:
            previous[sig] = signal.signal(sig, enqueue)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict) -> None:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)

    def _emit_exit_record(self, exit_code: int, command: Sequence[str]) -> None:
        success = exit_code == 0
        message = f"Command exited with code {exit_code}"
        record = LogRecord(
            timestamp=utc_now(),
            level="info",
            message=message,
            attributes={
                "exit_code": exit_code,
                "command": shlex.join(command),
                "success": success,
            },
            raw=message,
            stream=STREAM_SYSTEM,
        )
        if self._stats is not None:
            self._stats.record_entry(STREAM_SYSTEM)
        try:
            self._sink(record)
        except Exception as exc:
            logger.error("Error adding exit record to batch: %s", exc)
