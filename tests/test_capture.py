"""Tests for the stream capture module, using real child processes."""

import os
import shlex
import signal
import sys
import threading
import time

import pytest

from otel_logger.capture import StreamCapture, spawn_command
from otel_logger.extractor import JSONExtractor
from otel_logger.metrics import PipelineStats


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

class _Collector:
    """Thread-safe record sink."""

    def __init__(self):
        self._lock = threading.Lock()
        self.records = []

    def __call__(self, record):
        with self._lock:
            self.records.append(record)

    def by_stream(self, stream):
        return [r for r in self.records if r.stream == stream]


def _python(script: str) -> list[str]:
    return [sys.executable, "-c", script]


def _run(command, **kwargs):
    sink = _Collector()
    kwargs.setdefault("forward_signals", False)
    capture = StreamCapture(JSONExtractor(), sink, **kwargs)
    code = capture.run(spawn_command(command), command)
    return code, sink


def _kill_self_later(delay: float, sig: int) -> threading.Timer:
    timer = threading.Timer(delay, os.kill, args=(os.getpid(), sig))
    timer.daemon = True
    timer.start()
    return timer


main_thread_only = pytest.mark.skipif(
    threading.current_thread() is not threading.main_thread(),
    reason="signal handlers need the main thread",
)


# ------------------------------------------------------------------
# Tests
# ------------------------------------------------------------------

class TestStreams:

    def test_stdout_and_stderr_are_tagged(self):
        script = (
            "import sys\n"
            "print('{\"level\": \"info\", \"message\": \"to stdout\"}')\n"
            "print('plain error line', file=sys.stderr)\n"
            "print('  detail line', file=sys.stderr)\n"
        )
        code, sink = _run(_python(script))

        assert code == 0
        stdout = sink.by_stream("stdout")
        stderr = sink.by_stream("stderr")
        assert [r.message for r in stdout] == ["to stdout"]
        assert [r.message for r in stderr] == ["plain error line\n  detail line"]

    def test_system_record_is_last(self):
        command = _python("print('hello')")
        code, sink = _run(command)

        system = sink.records[-1]
        assert system.stream == "system"
        assert system.level == "info"
        assert system.message == "Command exited with code 0"
        assert system.raw == system.message
        assert system.attributes == {
            "exit_code": 0,
            "command": shlex.join(command),
            "success": True,
        }
        assert len(sink.by_stream("system")) == 1

    def test_non_zero_exit(self):
        code, sink = _run(_python("import sys; print('bye'); sys.exit(3)"))

        assert code == 3
        system = sink.by_stream("system")[0]
        assert system.attributes["exit_code"] == 3
        assert system.attributes["success"] is False

    def test_output_is_drained_before_exit_record(self):
        script = "for i in range(500):\n    print(f'line {i}')\n"
        code, sink = _run(_python(script))

        assert code == 0
        assert len(sink.by_stream("stdout")) == 500
        assert sink.records[-1].stream == "system"

    def test_stats_are_counted(self):
        stats = PipelineStats()
        _run(_python("import sys; print('a'); print('b', file=sys.stderr)"), stats=stats)

        entries = stats.snapshot()["entries"]
        assert entries == {"stdout": 1, "stderr": 1, "system": 1}

    def test_sink_errors_do_not_stop_capture(self):
        calls = []

        def flaky(record):
            calls.append(record)
            raise RuntimeError("batch full")

        capture = StreamCapture(JSONExtractor(), flaky, forward_signals=False)
        command = _python("print('one'); print('two')")
        code = capture.run(spawn_command(command), command)

        assert code == 0
        assert len(calls) == 3

    def test_oversized_number_keeps_stream_alive(self):
        script = "print('{\"message\": \"hi\", \"big\": ' + '9' * 5000 + '}')\nprint('after')\n"
        code, sink = _run(_python(script))

        assert code == 0
        stdout = sink.by_stream("stdout")
        assert len(stdout) == 2
        assert stdout[1].message == "after"


class TestPassthrough:

    def test_passthrough_stdout(self, capsys):
        _run(_python("print('visible')"), passthrough_stdout=True)
        assert "visible\n" in capsys.readouterr().out

    def test_passthrough_stderr(self, capsys):
        _run(_python("import sys; print('warned', file=sys.stderr)"), passthrough_stderr=True)
        assert "warned\n" in capsys.readouterr().err

    def test_no_passthrough_by_default(self, capsys):
        _run(_python("print('hidden')"))
        assert "hidden" not in capsys.readouterr().out


class TestSpawn:

    def test_missing_command(self):
        with pytest.raises(FileNotFoundError):
            spawn_command(["definitely-not-a-real-command-xyz"])


@main_thread_only
class TestSignals:

    def test_signal_is_forwarded(self):
        script = "import time\nprint('ready', flush=True)\ntime.sleep(30)\n"
        _kill_self_later(0.5, signal.SIGTERM)
        code, sink = _run(_python(script), forward_signals=True)

        assert code == -signal.SIGTERM
        assert sink.by_stream("system")[0].attributes["success"] is False

    def test_child_is_killed_after_grace_period(self):
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        _kill_self_later(1.0, signal.SIGTERM)
        started = time.monotonic()
        code, _ = _run(_python(script), forward_signals=True, shutdown_grace=0.5)

        assert code == -signal.SIGKILL
        assert time.monotonic() - started < 10

    def test_handlers_are_restored(self):
        before = signal.getsignal(signal.SIGTERM)
        _run(_python("pass"), forward_signals=True)
        assert signal.getsignal(signal.SIGTERM) == before

    def test_handlers_installed_before_readers_start(self, monkeypatch):
        before = signal.getsignal(signal.SIGTERM)
        seen = []
        original = StreamCapture._start_reader

        def recording(self, *args, **kwargs):
            seen.append(signal.getsignal(signal.SIGTERM))
            return original(self, *args, **kwargs)

        monkeypatch.setattr(StreamCapture, "_start_reader", recording)
        _run(_python("pass"), forward_signals=True)

        assert len(seen) == 2
        assert all(handler != before for handler in seen)
