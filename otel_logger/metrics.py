"""Pipeline statistics — thread-safe counters for reading and exporting."""

import threading
import time


class PipelineStats:
    """Counts entries read per stream and the outcome of every export."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, int] = {}
        self._batches_exported = 0
        self._records_exported = 0
        self._export_failures = 0
        self._records_dropped = 0
        self._start_time = time.monotonic()

    def record_entry(self, stream: str | None) -> None:
        key = stream or "stdin"
        with self._lock:
            self._entries[key] = self._entries.get(key, 0) + 1

    def record_export(self, batch_size: int, success: bool) -> None:
        """Record the outcome of one flush.

        Args:
            batch_size: Number of records in the flushed batch.
            success: Whether the exporter accepted the batch. Failed
                batches count as dropped since they are never retried.
        """
        with self._lock:
            if success:
                self._batches_exported += 1
                self._records_exported += batch_size
            else:
                self._export_failures += 1
                self._records_dropped += batch_size

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "entries": dict(self._entries),
                "total_entries": sum(self._entries.values()),
                "batches_exported": self._batches_exported,
                "records_exported": self._records_exported,
                "export_failures": self._export_failures,
                "records_dropped": self._records_dropped,
                "uptime_seconds": time.monotonic() - self._start_time,
            }
