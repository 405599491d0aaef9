"""LogBatcher — buffers records and flushes them by size or on a timer."""

import logging
import threading
from typing import Callable, Optional

from otel_logger.models import LogRecord

logger = logging.getLogger(__name__)

FlushFunc = Callable[[list[LogRecord]], None]


class LogBatcher:
    """Thread-safe record buffer with a dual flush trigger.

    A flush happens when the buffer reaches *max_size* (performed by the
    ``add`` call that crossed the threshold) or every *flush_interval*
    seconds from a background thread, whichever comes first. The buffer is
    swapped out under the lock and *flush_fn* runs outside it, so producers
    never wait on export I/O. A batch handed to *flush_fn* is never
    re-queued, even if *flush_fn* raises.
    """

    def __init__(self, max_size: int, flush_interval: float, flush_fn: FlushFunc):
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self._max_size = max_size
        self._flush_interval = flush_interval
        self._flush_fn = flush_fn
        self._lock = threading.Lock()
        self._records: list[LogRecord] = []
        self._stopped = threading.Event()
        self._closed = False
        self._timer: Optional[threading.Thread] = None

        if flush_interval > 0:
            self._timer = threading.Thread(
                target=self._flush_loop, name="log-batcher-timer", daemon=True
            )
            self._timer.start()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def flush_interval(self) -> float:
        return self._flush_interval

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._records)

    def add(self, record: LogRecord) -> None:
        """Buffer *record*; flush synchronously once the batch is full."""
        with self._lock:
            self._records.append(record)
            batch = self._take_if_full()
        if batch:
            self._flush_fn(batch)

    def flush(self) -> None:
        """Hand everything buffered so far to the flush function."""
        with self._lock:
            batch = self._take()
        if batch:
            self._flush_fn(batch)

    def close(self) -> None:
        """Stop the timer and flush what is left."""
        if not self._closed:
            self._closed = True
            self._stopped.set()
            if self._timer is not None:
                self._timer.join()
        self.flush()

    def __enter__(self) -> "LogBatcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _take(self) -> list[LogRecord]:
        batch = self._records
        self._records = []
        return batch

    def _take_if_full(self) -> list[LogRecord]:
        if len(self._records) >= self._max_size:
            return self._take()
        return []

    def _flush_loop(self) -> None:
        while not self._stopped.wait(self._flush_interval):
            try:
                self.flush()
            except Exception as exc:
                logger.error("Error flushing logs: %s", exc)
