"""Tests for the LogBatcher module."""

import threading
import time

import pytest

from otel_logger.batcher import LogBatcher
from otel_logger.models import LogRecord


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _make_batcher(max_size=3, flush_interval=0.0):
    """Create a LogBatcher wired to a simple list-based collector."""
    flushed: list[list[LogRecord]] = []
    lock = threading.Lock()

    def flush_fn(batch):
        with lock:
            flushed.append(batch)

    return LogBatcher(max_size, flush_interval, flush_fn), flushed


def _record(i: int) -> LogRecord:
    return LogRecord(message=f"log-{i}", raw=f"log-{i}")


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ------------------------------------------------------------------
# Tests
# ------------------------------------------------------------------

class TestSizeFlush:

    def test_flush_at_max_size(self):
        batcher, flushed = _make_batcher(max_size=3)
        for i in range(3):
            batcher.add(_record(i))

        assert len(flushed) == 1
        assert [r.message for r in flushed[0]] == ["log-0", "log-1", "log-2"]
        assert batcher.pending_count == 0
        batcher.close()

    def test_no_premature_flush(self):
        batcher, flushed = _make_batcher(max_size=5)
        for i in range(4):
            batcher.add(_record(i))

        assert flushed == []
        assert batcher.pending_count == 4
        batcher.close()

    def test_threshold_law(self):
        batcher, flushed = _make_batcher(max_size=3)
        for i in range(7):
            batcher.add(_record(i))

        assert [len(b) for b in flushed] == [3, 3]
        assert batcher.pending_count == 1

        batcher.close()
        assert [len(b) for b in flushed] == [3, 3, 1]

    def test_max_size_one_flushes_every_record(self):
        batcher, flushed = _make_batcher(max_size=1)
        for i in range(3):
            batcher.add(_record(i))
        assert len(flushed) == 3
        batcher.close()

    @pytest.mark.parametrize("max_size", [0, -5])
    def test_invalid_max_size(self, max_size):
        with pytest.raises(ValueError):
            LogBatcher(max_size, 0.0, lambda batch: None)


class TestTimerFlush:

    def test_timer_flushes_partial_batch(self):
        batcher, flushed = _make_batcher(max_size=100, flush_interval=0.05)
        batcher.add(_record(0))

        assert _wait_for(lambda: len(flushed) == 1)
        assert batcher.pending_count == 0
        batcher.close()

    def test_timer_skips_empty_buffer(self):
        batcher, flushed = _make_batcher(max_size=100, flush_interval=0.02)
        time.sleep(0.1)
        batcher.close()
        assert flushed == []

    def test_timer_errors_are_logged(self, caplog):
        calls = []

        def failing(batch):
            calls.append(batch)
            raise RuntimeError("collector down")

        batcher = LogBatcher(100, 0.05, failing)
        batcher.add(_record(0))

        assert _wait_for(lambda: "Error flushing logs: collector down" in caplog.text)
        assert batcher.pending_count == 0
        batcher.close()
        # the failed batch is not re-queued
        assert len(calls) == 1


class TestClose:

    def test_close_flushes_remaining(self):
        batcher, flushed = _make_batcher(max_size=10)
        batcher.add(_record(0))
        batcher.add(_record(1))
        batcher.close()
        assert [len(b) for b in flushed] == [2]

    def test_close_is_idempotent(self):
        batcher, flushed = _make_batcher(max_size=10, flush_interval=0.05)
        batcher.add(_record(0))
        batcher.close()
        batcher.close()
        assert [len(b) for b in flushed] == [1]

    def test_close_empty_does_not_call_flush(self):
        batcher, flushed = _make_batcher()
        batcher.close()
        assert flushed == []

    def test_context_manager(self):
        batcher, flushed = _make_batcher(max_size=10)
        with batcher:
            batcher.add(_record(0))
        assert len(flushed) == 1

    def test_sync_flush_error_propagates_without_requeue(self):
        def failing(batch):
            raise RuntimeError("boom")

        batcher = LogBatcher(2, 0.0, failing)
        batcher.add(_record(0))
        with pytest.raises(RuntimeError):
            batcher.add(_record(1))
        assert batcher.pending_count == 0
        batcher.close()


class TestConcurrency:

    def test_concurrent_adds_lose_nothing(self):
        batcher, flushed = _make_batcher(max_size=10, flush_interval=0.01)

        def producer(offset):
            for i in range(250):
                batcher.add(_record(offset + i))

        threads = [threading.Thread(target=producer, args=(n * 1000,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        batcher.close()

        messages = [r.message for batch in flushed for r in batch]
        assert len(messages) == 1000
        assert len(set(messages)) == 1000
        assert all(len(batch) <= 10 for batch in flushed)

    def test_add_not_blocked_while_flushing(self):
        entered = threading.Event()
        release = threading.Event()
        flushed = []

        def slow_flush(batch):
            entered.set()
            release.wait(5.0)
            flushed.append(batch)

        batcher = LogBatcher(2, 0.0, slow_flush)
        producer = threading.Thread(
            target=lambda: [batcher.add(_record(i)) for i in range(2)]
        )
        producer.start()
        assert entered.wait(2.0)

        # The full batch was handed off; the buffer is free for new records.
        batcher.add(_record(99))
        assert batcher.pending_count == 1
        assert producer.is_alive()

        release.set()
        producer.join(2.0)
        batcher.close()

        assert [len(batch) for batch in flushed] == [2, 1]
