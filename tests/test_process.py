from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from conftest import requires_python3
from polyglot_runner.execution.process import ProcessRunner, resolve_identity
from polyglot_runner.execution.types import LaunchProfile, ProcessChunk, ProcessResult, StreamName
from polyglot_runner.policy import DEFAULT_SEARCH_PATH


def _profile(**overrides) -> LaunchProfile:
    values = {"timeout_seconds": 5.0, "search_path": DEFAULT_SEARCH_PATH}
    values.update(overrides)
    return LaunchProfile(**values)


def _python(tmp_path: Path, script: str, **overrides):
    return _profile(**overrides).spec(["python3", "-u", "-c", script], tmp_path)


def _assert_reaped(pid: int) -> None:
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@requires_python3
def test_chunks_arrive_in_write_order(tmp_path: Path) -> None:
    script = (
        "import sys, time\n"
        "sys.stdout.write('one\\n'); sys.stdout.flush(); time.sleep(0.2)\n"
        "sys.stderr.write('two\\n'); sys.stderr.flush(); time.sleep(0.2)\n"
        "sys.stdout.write('three\\n')\n"
    )
    items = list(ProcessRunner().stream(_python(tmp_path, script)))
    chunks = [item for item in items if isinstance(item, ProcessChunk)]
    result = items[-1]

    assert [(chunk.stream, chunk.data) for chunk in chunks] == [
        (StreamName.STDOUT, "one\n"),
        (StreamName.STDERR, "two\n"),
        (StreamName.STDOUT, "three\n"),
    ]
    assert isinstance(result, ProcessResult)
    assert result.returncode == 0
    assert result.stdout == "one\nthree\n"
    assert result.stderr == "two\n"
    _assert_reaped(result.pid)


@requires_python3
def test_nonzero_exit_is_reported(tmp_path: Path) -> None:
    result = ProcessRunner().run(_python(tmp_path, "raise SystemExit(3)"))
    assert result.returncode == 3
    assert not result.ok
    assert not result.timed_out


@requires_python3
def test_timeout_kills_the_process(tmp_path: Path) -> None:
    result = ProcessRunner().run(
        _python(tmp_path, "import time\nprint('waiting', flush=True)\ntime.sleep(30)", timeout_seconds=0.5)
    )
    assert result.timed_out
    assert result.stdout == "waiting\n"
    assert result.duration_ms < 5000
    _assert_reaped(result.pid)


def _gone(pid: int, wait_seconds: float = 2.0) -> bool:
    # An orphan may linger as a zombie until init reaps it; that counts as gone.
    deadline = time.monotonic() + wait_seconds
    while True:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
        except OSError:
            return True
        if stat.rsplit(")", 1)[-1].split()[0] == "Z":
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(0.05)


@requires_python3
def test_timeout_kills_descendants(tmp_path: Path) -> None:
    script = (
        "import subprocess, time\n"
        "child = subprocess.Popen(['sleep', '60'])\n"
        "print(child.pid, flush=True)\n"
        "time.sleep(30)\n"
    )
    result = ProcessRunner().run(_python(tmp_path, script, timeout_seconds=1.0))

    assert result.timed_out
    grandchild = int(result.stdout.split()[0])
    assert _gone(grandchild)
    _assert_reaped(result.pid)


@requires_python3
def test_exited_leader_does_not_wait_for_background_children(tmp_path: Path) -> None:
    script = (
        "import subprocess\n"
        "child = subprocess.Popen(['sleep', '60'])\n"
        "print(child.pid, flush=True)\n"
    )
    result = ProcessRunner().run(_python(tmp_path, script, timeout_seconds=10.0))

    assert not result.timed_out
    assert result.returncode == 0
    assert result.duration_ms < 5000
    grandchild = int(result.stdout.split()[0])
    assert _gone(grandchild)


@requires_python3
def test_output_budget_stops_the_process(tmp_path: Path) -> None:
    result = ProcessRunner().run(
        _python(tmp_path, "while True:\n    print('x' * 1000)", max_output_bytes=4096)
    )
    assert result.output_exceeded
    assert not result.timed_out
    assert len(result.stdout.encode("utf-8")) <= 4096
    _assert_reaped(result.pid)


@requires_python3
def test_closing_the_stream_kills_the_process(tmp_path: Path) -> None:
    stream = ProcessRunner().stream(
        _python(tmp_path, "import os, time\nprint(os.getpid(), flush=True)\ntime.sleep(30)")
    )
    first = next(stream)
    assert isinstance(first, ProcessChunk)
    pid = int(first.data.strip())
    stream.close()
    _assert_reaped(pid)


@requires_python3
def test_child_gets_a_minimal_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("POLYGLOT_HOST_SECRET", "hunter2")
    script = "import os\nprint(os.environ.get('POLYGLOT_HOST_SECRET'))\nprint(os.environ['HOME'])\nprint(os.getcwd())"
    result = ProcessRunner().run(_python(tmp_path, script))
    lines = result.stdout.splitlines()
    assert lines[0] == "None"
    assert Path(lines[1]) == tmp_path
    assert Path(lines[2]).resolve() == tmp_path.resolve()


@requires_python3
def test_invalid_utf8_is_replaced(tmp_path: Path) -> None:
    result = ProcessRunner().run(_python(tmp_path, "import sys\nsys.stdout.buffer.write(b'ok \\xff\\n')"))
    assert result.stdout == "ok �\n"


def test_missing_binary_is_a_launch_error(tmp_path: Path) -> None:
    result = ProcessRunner().run(_profile().spec(["/nonexistent/bin/tool", "x"], tmp_path))
    assert result.pid is None
    assert result.returncode is None
    assert result.launch_error is not None
    assert result.launch_error.startswith("could not launch 'tool'")
    assert "/nonexistent" not in result.launch_error


def test_identity_is_only_resolved_for_root(monkeypatch: pytest.MonkeyPatch) -> None:
    assert resolve_identity("") is None
    monkeypatch.setattr("polyglot_runner.execution.process.os.geteuid", lambda: 1000)
    assert resolve_identity("nobody") is None

    monkeypatch.setattr("polyglot_runner.execution.process.os.geteuid", lambda: 0)
    assert resolve_identity("no-such-user-polyglot") is None
