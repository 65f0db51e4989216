from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from conftest import SpyRunner, SpyWorkspaces, requires_python3
from polyglot_runner import ExecutionRequest, FailureKind, Orchestrator, RunnerPolicy, run_code
from polyglot_runner.execution.toolchains import MISSING_C_MAIN
from polyglot_runner.execution.types import (
    EventType,
    OutputEvent,
    ProcessChunk,
    ProcessResult,
    ProcessSpec,
    StreamName,
)

HELLO_C = '#include <stdio.h>\nint main() { printf("hi\\n"); return 0; }\n'


def _types(events: list[OutputEvent]) -> list[str]:
    return [event.type.value for event in events]


def _out(text: str) -> ProcessChunk:
    return ProcessChunk(StreamName.STDOUT, text)


def _err(text: str) -> ProcessChunk:
    return ProcessChunk(StreamName.STDERR, text)


def _orchestrator(policy: RunnerPolicy, runner, workspaces: SpyWorkspaces) -> Orchestrator:
    return Orchestrator(policy, runner=runner, workspaces=workspaces)


@pytest.mark.parametrize(
    ("language", "code", "kind"),
    [
        ("python", "", FailureKind.EMPTY_CODE),
        ("python", "import os\nprint(os.getcwd())", FailureKind.RESTRICTED_CONSTRUCT),
        ("python", "#" * 20000, FailureKind.PAYLOAD_TOO_LARGE),
        ("ruby", "puts 1", FailureKind.UNSUPPORTED_LANGUAGE),
        ("c", "void f() {}", FailureKind.MISSING_ENTRY_POINT),
        ("java", "interface I {}", FailureKind.MISSING_INCLUDE_OR_CLASS),
    ],
)
def test_rejections_never_touch_disk_or_spawn(
    policy: RunnerPolicy, workspaces: SpyWorkspaces, language: str, code: str, kind: FailureKind
) -> None:
    runner = SpyRunner()
    events = list(_orchestrator(policy, runner, workspaces).stream(ExecutionRequest(language, code)))

    assert _types(events) == ["start", "error", "complete"]
    outcome = events[-1].outcome
    assert outcome is not None
    assert not outcome.success
    assert outcome.failure_kind is kind
    assert outcome.stderr == events[1].data
    assert runner.specs == []
    assert workspaces.created == []


def test_missing_main_message(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    outcome = _orchestrator(policy, SpyRunner(), workspaces).execute(
        ExecutionRequest("c", "#include <stdio.h>\nvoid f() {}")
    )
    assert outcome.stderr == MISSING_C_MAIN
    assert outcome.to_response()["error"] == MISSING_C_MAIN


def test_compile_failure_reports_compiler_text(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    diagnostic = "main.c:2:30: error: expected ';' before 'return'\n"
    runner = SpyRunner(compile_result=ProcessResult(argv=("gcc",), pid=9, returncode=1, stderr=diagnostic))
    events = list(_orchestrator(policy, runner, workspaces).stream(ExecutionRequest("c", HELLO_C)))

    assert _types(events) == ["start", "error", "complete"]
    assert events[1].data == diagnostic
    outcome = events[-1].outcome
    assert outcome.failure_kind is FailureKind.COMPILE_FAILURE
    assert outcome.stderr == diagnostic
    assert outcome.stdout == ""
    assert outcome.exit_code == 1
    assert len(runner.specs) == 1
    assert workspaces.destroyed == workspaces.created
    assert not workspaces.created[0].root_dir.exists()


def test_streaming_and_buffered_outcomes_match(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = SpyRunner(
        chunks=[_out("a\n"), _err("warn\n"), _out("b\n")],
        result=ProcessResult(argv=("x",), pid=5, returncode=0),
    )
    orchestrator = _orchestrator(policy, runner, workspaces)
    request = ExecutionRequest("c", HELLO_C)

    events = list(orchestrator.stream(request))
    buffered = orchestrator.execute(request)

    assert _types(events) == ["start", "output", "error", "output", "complete"]
    assert [event.data for event in events[1:4]] == ["a\n", "warn\n", "b\n"]
    streamed = events[-1].outcome
    for outcome in (streamed, buffered):
        assert outcome.stdout == "a\nb\n"
        assert outcome.stderr == "warn\n"
        assert not outcome.success
        assert outcome.failure_kind is FailureKind.RUNTIME_FAILURE
        assert outcome.exit_code == 0


def test_success_response_shape(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = SpyRunner(chunks=[_out("Hello, World!\n")], result=ProcessResult(argv=("x",), pid=5, returncode=0))
    outcome = _orchestrator(policy, runner, workspaces).execute(ExecutionRequest("python", 'print("Hello, World!")'))

    assert outcome.success
    assert outcome.failure_kind is None
    body = outcome.to_response()
    assert body["success"] is True
    assert body["output"] == "Hello, World!\n"
    assert "error" not in body
    assert isinstance(body["executionTime"], int)


def test_silent_nonzero_exit_gets_generic_message(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = SpyRunner(result=ProcessResult(argv=("x",), pid=5, returncode=3))
    outcome = _orchestrator(policy, runner, workspaces).execute(ExecutionRequest("python", "raise SystemExit(3)"))

    assert outcome.failure_kind is FailureKind.RUNTIME_FAILURE
    assert outcome.exit_code == 3
    assert outcome.stderr == "Execution failed"


def test_nonzero_exit_keeps_program_stderr(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = SpyRunner(chunks=[_err("Traceback\nValueError: boom\n")], result=ProcessResult(argv=("x",), pid=5, returncode=1))
    outcome = _orchestrator(policy, runner, workspaces).execute(ExecutionRequest("python", "raise ValueError('boom')"))

    assert outcome.stderr == "Traceback\nValueError: boom\n"


def test_timeout_message_starts_on_its_own_line(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = SpyRunner(
        chunks=[_out("tick\n"), _err("partial")],
        result=ProcessResult(argv=("x",), pid=5, returncode=-9, timed_out=True),
    )
    events = list(_orchestrator(policy, runner, workspaces).stream(ExecutionRequest("python", "while True: pass")))

    assert _types(events) == ["start", "output", "error", "error", "complete"]
    assert events[3].data == "\nExecution timed out after 5s"
    outcome = events[-1].outcome
    assert outcome.failure_kind is FailureKind.TIMEOUT
    assert outcome.stdout == "tick\n"
    assert outcome.stderr == "partial\nExecution timed out after 5s"


def test_output_limit(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = SpyRunner(
        chunks=[_out("x" * 100)],
        result=ProcessResult(argv=("x",), pid=5, returncode=-9, output_exceeded=True),
    )
    outcome = _orchestrator(policy, runner, workspaces).execute(ExecutionRequest("python", "while True: print('x')"))

    assert outcome.failure_kind is FailureKind.OUTPUT_LIMIT_EXCEEDED
    assert outcome.stderr == f"Output limit exceeded: more than {policy.max_output_kb} KB written"


def test_missing_runtime_is_a_launch_failure(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = SpyRunner(
        result=ProcessResult(
            argv=("python3",),
            pid=None,
            returncode=None,
            launch_error="could not launch 'python3': No such file or directory",
        )
    )
    outcome = _orchestrator(policy, runner, workspaces).execute(ExecutionRequest("python", "print(1)"))

    assert outcome.failure_kind is FailureKind.LAUNCH_FAILURE
    assert outcome.stderr.startswith("Toolchain unavailable: could not launch 'python3'")
    assert outcome.exit_code is None


def test_workspace_is_gone_before_complete(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = SpyRunner(chunks=[_out("hi\n")])
    for event in _orchestrator(policy, runner, workspaces).stream(ExecutionRequest("python", "print('hi')")):
        if event.type is EventType.OUTPUT:
            assert workspaces.created[0].root_dir.exists()
        if event.type is EventType.COMPLETE:
            assert workspaces.destroyed == workspaces.created
            assert not workspaces.created[0].root_dir.exists()


class _ExplodingRunner(SpyRunner):
    def stream(self, spec: ProcessSpec) -> Iterator[ProcessChunk | ProcessResult]:
        self.specs.append(spec)
        yield _out("before\n")
        raise RuntimeError("pipe exploded")


def test_unexpected_errors_become_internal_errors(
    policy: RunnerPolicy, workspaces: SpyWorkspaces, caplog: pytest.LogCaptureFixture
) -> None:
    events = list(
        _orchestrator(policy, _ExplodingRunner(), workspaces).stream(ExecutionRequest("python", "print(1)"))
    )

    assert _types(events) == ["start", "output", "error", "complete"]
    assert events[2].data == "Internal server error"
    outcome = events[-1].outcome
    assert outcome.failure_kind is FailureKind.INTERNAL_ERROR
    assert "pipe exploded" not in outcome.stderr
    assert "pipe exploded" in caplog.text
    assert not workspaces.created[0].root_dir.exists()


class _TrackingRunner(SpyRunner):
    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    def stream(self, spec: ProcessSpec) -> Iterator[ProcessChunk | ProcessResult]:
        self.specs.append(spec)
        try:
            while True:
                yield _out("tick\n")
        finally:
            self.closed = True


def test_closing_the_stream_stops_the_run(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = _TrackingRunner()
    events = _orchestrator(policy, runner, workspaces).stream(ExecutionRequest("python", "while True: print('tick')"))
    for event in events:
        if event.type is EventType.OUTPUT:
            break
    events.close()

    assert runner.closed
    assert not workspaces.created[0].root_dir.exists()


def test_requests_get_separate_workspaces(policy: RunnerPolicy, workspaces: SpyWorkspaces) -> None:
    runner = SpyRunner()
    orchestrator = _orchestrator(policy, runner, workspaces)
    orchestrator.execute(ExecutionRequest("python", "print(1)"))
    orchestrator.execute(ExecutionRequest("python", "print(2)"))

    first, second = workspaces.created
    assert first.root_dir != second.root_dir
    assert runner.specs[0].cwd != runner.specs[1].cwd


def test_run_code_rejects_orchestrator_with_policy(policy: RunnerPolicy) -> None:
    with pytest.raises(ValueError, match="not both"):
        run_code("print(1)", "python", policy=policy, orchestrator=Orchestrator(policy))


@requires_python3
def test_live_python_hello_world(policy: RunnerPolicy) -> None:
    outcome = run_code('print("Hello, World!")', "python", policy=policy)

    assert outcome.success
    assert outcome.stdout == "Hello, World!\n"
    assert outcome.to_response()["output"] == "Hello, World!\n"
    assert list(Path(policy.workspace_dir).iterdir()) == []


@requires_python3
def test_live_python_is_repeatable(policy: RunnerPolicy) -> None:
    orchestrator = Orchestrator(policy)
    code = "for i in range(3):\n    print(i * i)"
    first = orchestrator.execute(ExecutionRequest("python", code))
    second = orchestrator.execute(ExecutionRequest("python", code))

    assert first.success and second.success
    assert first.stdout == second.stdout == "0\n1\n4\n"


@requires_python3
def test_live_python_exception(policy: RunnerPolicy) -> None:
    outcome = Orchestrator(policy).execute(ExecutionRequest("python", "raise ValueError('boom')"))

    assert not outcome.success
    assert outcome.failure_kind is FailureKind.RUNTIME_FAILURE
    assert outcome.exit_code == 1
    assert "ValueError: boom" in outcome.stderr


@requires_python3
def test_live_python_timeout(tmp_path: Path) -> None:
    policy = RunnerPolicy(timeout_seconds=1, run_as_user="", workspace_dir=str(tmp_path / "ws"))
    events = list(Orchestrator(policy).stream(ExecutionRequest("python", "print('go', flush=True)\nwhile True:\n    pass")))

    assert events[0].type is EventType.START
    assert events[1].type is EventType.OUTPUT and events[1].data == "go\n"
    assert events[-2].data == "Execution timed out after 1s"
    outcome = events[-1].outcome
    assert outcome.failure_kind is FailureKind.TIMEOUT
    assert outcome.execution_time_ms < 5000
    assert list((tmp_path / "ws").iterdir()) == []
