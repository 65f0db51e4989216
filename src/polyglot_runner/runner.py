from __future__ import annotations

import contextlib
import logging
import time
from enum import Enum
from typing import Generator, Iterator

from .execution.config import ToolchainDescriptor, descriptors_from_overrides
from .execution.engine import ProcessBackend
from .execution.process import ProcessRunner, resolve_identity
from .execution.toolchains import ToolchainAdapter, build_adapters
from .execution.types import (
    EventType,
    ExecutionOutcome,
    ExecutionRequest,
    FailureKind,
    Language,
    LaunchProfile,
    OutputEvent,
    ProcessResult,
    StreamName,
)
from .execution.workspace import Workspace, WorkspaceManager
from .policy import RunnerPolicy
from .validator import validate

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"
RUNTIME_FAILURE_MESSAGE = "Execution failed"


class ExecutionState(str, Enum):
    """Lifecycle states of one request.

    Example:
        ```python
        ExecutionState.COMPILING.value  # "compiling"
        ```
    """

    VALIDATING = "validating"
    REJECTED = "rejected"
    PREPARING_WORKSPACE = "preparing_workspace"
    WRITING_SOURCE = "writing_source"
    COMPILING = "compiling"
    COMPILE_FAILED = "compile_failed"
    COMPILED = "compiled"
    RUNNING = "running"
    RUN_FAILED = "run_failed"
    TIMEOUT = "timeout"
    COMPLETED = "completed"
    CLEANING_UP = "cleaning_up"
    DONE = "done"


class _Transcript:
    """Accumulate the text of every event passed through `track`.

    Example:
        ```python
        transcript = _Transcript()
        transcript.track(OutputEvent.output("hi\\n"))
        ```
    """

    def __init__(self) -> None:
        """Start with empty stdout/stderr buffers.

        Example:
            ```python
            _Transcript()
            ```
        """
        self._stdout: list[str] = []
        self._stderr: list[str] = []

    def track(self, event: OutputEvent) -> OutputEvent:
        """Record `event` and hand it back for yielding.

        Example:
            ```python
            yield transcript.track(OutputEvent.error("boom"))
            ```
        """
        if event.type is EventType.OUTPUT:
            self._stdout.append(event.data)
        elif event.type is EventType.ERROR:
            self._stderr.append(event.data)
        return event

    def terminal_error(self, message: str) -> OutputEvent:
        """Build an error event that starts on its own line.

        Example:
            ```python
            transcript.terminal_error("Execution timed out after 10s")
            ```
        """
        if self._stderr and not self._stderr[-1].endswith("\n"):
            message = "\n" + message
        return self.track(OutputEvent.error(message))

    @property
    def stdout(self) -> str:
        """Return all output chunks joined in arrival order.

        Example:
            ```python
            transcript.stdout
            ```
        """
        return "".join(self._stdout)

    @property
    def stderr(self) -> str:
        """Return all error chunks joined in arrival order.

        Example:
            ```python
            transcript.stderr
            ```
        """
        return "".join(self._stderr)


def _format_seconds(value: float) -> str:
    """Render a timeout without a trailing `.0`.

    Example:
        ```python
        _format_seconds(10.0)  # "10"
        ```
    """
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def _build_profile(policy: RunnerPolicy) -> tuple[LaunchProfile, tuple[int, int] | None]:
    """Derive process limits and the unprivileged identity from a policy.

    Example:
        ```python
        profile, identity = _build_profile(RunnerPolicy(run_as_user=""))
        ```
    """
    identity = resolve_identity(policy.run_as_user)
    profile = LaunchProfile(
        timeout_seconds=float(policy.timeout_seconds),
        search_path=policy.search_path,
        user=identity[0] if identity else None,
        group=identity[1] if identity else None,
        memory_limit_mb=policy.memory_limit_mb,
        file_size_limit_mb=policy.file_size_limit_mb,
        max_output_bytes=policy.max_output_bytes,
    )
    return profile, identity


class Orchestrator:
    """Sequence validate → workspace → compile → run → cleanup per request.

    `stream` is the single producer; `execute` drains it, so buffered and
    streaming callers always agree on the outcome.

    Example:
        ```python
        orchestrator = Orchestrator(RunnerPolicy())
        outcome = orchestrator.execute(ExecutionRequest("python", "print('hi')"))
        ```
    """

    def __init__(
        self,
        policy: RunnerPolicy | None = None,
        *,
        runner: ProcessBackend | None = None,
        workspaces: WorkspaceManager | None = None,
    ) -> None:
        """Wire adapters, process runner and workspace manager for a policy.

        Example:
            ```python
            orchestrator = Orchestrator(RunnerPolicy(timeout_seconds=5), runner=ProcessRunner())
            ```
        """
        self._policy = policy or RunnerPolicy()
        profile, identity = _build_profile(self._policy)
        self._runner = runner or ProcessRunner()
        self._workspaces = workspaces or WorkspaceManager(
            self._policy.workspace_dir or None, owner=identity
        )
        self._descriptors = descriptors_from_overrides(self._policy.toolchains)
        self._adapters = build_adapters(self._descriptors, self._runner, profile)

    @property
    def policy(self) -> RunnerPolicy:
        """Return the policy this orchestrator enforces.

        Example:
            ```python
            orchestrator.policy.timeout_seconds
            ```
        """
        return self._policy

    @property
    def descriptors(self) -> dict[Language, ToolchainDescriptor]:
        """Return the toolchain descriptors in effect.

        Example:
            ```python
            orchestrator.descriptors[Language.C].compiler  # "gcc"
            ```
        """
        return dict(self._descriptors)

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Run one request to completion and return its outcome.

        Example:
            ```python
            outcome = orchestrator.execute(ExecutionRequest("python", "print('hi')"))
            outcome.stdout  # "hi\\n"
            ```
        """
        outcome: ExecutionOutcome | None = None
        for event in self.stream(request):
            if event.type is EventType.COMPLETE:
                outcome = event.outcome
        if outcome is None:
            raise RuntimeError("execution stream ended without a complete event")
        return outcome

    def stream(self, request: ExecutionRequest) -> Iterator[OutputEvent]:
        """Yield `start`, output/error chunks as they occur, then `complete`.

        Closing the iterator early kills the running program and removes the
        workspace.

        Example:
            ```python
            for event in orchestrator.stream(ExecutionRequest("c", source)):
                print(event.to_message())
            ```
        """
        started = time.monotonic()
        transcript = _Transcript()
        kind: FailureKind | None = None
        exit_code: int | None = None

        yield transcript.track(OutputEvent.start())
        self._enter(request, ExecutionState.VALIDATING)
        try:
            rejection = validate(request.language, request.source_code, self._policy)
            if rejection is not None:
                self._enter(request, ExecutionState.REJECTED)
                kind = rejection.kind
                yield transcript.track(OutputEvent.error(rejection.message))
            else:
                adapter = self._adapters[Language(request.language)]
                precheck = adapter.precheck(request.source_code)
                if precheck is not None:
                    self._enter(request, ExecutionState.COMPILE_FAILED)
                    kind = precheck.failure_kind
                    yield transcript.track(OutputEvent.error(precheck.message))
                else:
                    self._enter(request, ExecutionState.PREPARING_WORKSPACE)
                    with self._workspaces.acquire(request.request_id) as workspace:
                        kind, exit_code = yield from self._build_and_run(
                            request, adapter, workspace, transcript
                        )
                        self._enter(request, ExecutionState.CLEANING_UP)
        except Exception:
            logger.exception("Request %s failed unexpectedly", request.request_id)
            kind = FailureKind.INTERNAL_ERROR
            exit_code = None
            yield transcript.terminal_error(INTERNAL_ERROR_MESSAGE)

        outcome = ExecutionOutcome(
            success=kind is None,
            stdout=transcript.stdout,
            stderr=transcript.stderr,
            exit_code=exit_code,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            failure_kind=kind,
        )
        self._enter(request, ExecutionState.DONE)
        logger.info(
            "Request %s (%s) finished in %dms: %s",
            request.request_id,
            request.language,
            outcome.execution_time_ms,
            kind.value if kind else "success",
        )
        yield OutputEvent.complete(outcome)

    def _build_and_run(
        self,
        request: ExecutionRequest,
        adapter: ToolchainAdapter,
        workspace: Workspace,
        transcript: _Transcript,
    ) -> Generator[OutputEvent, None, tuple[FailureKind | None, int | None]]:
        """Write, compile and run inside an acquired workspace.

        Example:
            ```python
            kind, exit_code = yield from self._build_and_run(request, adapter, ws, transcript)
            ```
        """
        self._enter(request, ExecutionState.WRITING_SOURCE)
        self._workspaces.write_source(
            workspace, request.source_code, adapter.source_filename(request.source_code)
        )

        if adapter.descriptor.compile_required:
            self._enter(request, ExecutionState.COMPILING)
            compiled = adapter.prepare(workspace)
            if not compiled.ok:
                self._enter(request, ExecutionState.COMPILE_FAILED)
                yield transcript.track(OutputEvent.error(compiled.message))
                process = compiled.process
                return compiled.failure_kind, process.returncode if process else None
            self._enter(request, ExecutionState.COMPILED)

        self._enter(request, ExecutionState.RUNNING)
        result: ProcessResult | None = None
        with contextlib.closing(adapter.execute(workspace)) as items:
            for item in items:
                if isinstance(item, ProcessResult):
                    result = item
                elif item.stream is StreamName.STDOUT:
                    yield transcript.track(OutputEvent.output(item.data))
                else:
                    yield transcript.track(OutputEvent.error(item.data))
        if result is None:
            raise RuntimeError("process runner ended without a result")

        kind, message = self._classify(result, transcript)
        if message:
            yield transcript.terminal_error(message)
        if kind is FailureKind.TIMEOUT:
            self._enter(request, ExecutionState.TIMEOUT)
        elif kind is not None:
            self._enter(request, ExecutionState.RUN_FAILED)
        else:
            self._enter(request, ExecutionState.COMPLETED)
        return kind, result.returncode

    def _classify(self, result: ProcessResult, transcript: _Transcript) -> tuple[FailureKind | None, str]:
        """Map a finished run onto a failure kind and an optional terminal message.

        Example:
            ```python
            kind, message = orchestrator._classify(result, transcript)
            ```
        """
        if result.launch_error is not None:
            return FailureKind.LAUNCH_FAILURE, f"Toolchain unavailable: {result.launch_error}"
        if result.timed_out:
            seconds = _format_seconds(self._policy.timeout_seconds)
            return FailureKind.TIMEOUT, f"Execution timed out after {seconds}s"
        if result.output_exceeded:
            return (
                FailureKind.OUTPUT_LIMIT_EXCEEDED,
                f"Output limit exceeded: more than {self._policy.max_output_kb} KB written",
            )
        if result.returncode != 0:
            return FailureKind.RUNTIME_FAILURE, "" if transcript.stderr else RUNTIME_FAILURE_MESSAGE
        if transcript.stderr:
            return FailureKind.RUNTIME_FAILURE, ""
        return None, ""

    def _enter(self, request: ExecutionRequest, state: ExecutionState) -> None:
        """Log a state transition.

        Example:
            ```python
            self._enter(request, ExecutionState.RUNNING)
            ```
        """
        logger.debug("Request %s -> %s", request.request_id, state.value)


def _resolve_policy(policy: RunnerPolicy | None, policy_file: str | None) -> RunnerPolicy:
    """Resolve the effective policy object for a run.

    Example:
        ```python
        policy = _resolve_policy(None, "/tmp/policy.toml")
        ```
    """
    if policy is not None and policy_file is not None:
        raise ValueError("Provide either 'policy' or 'policy_file', not both")
    if policy is None and policy_file is not None:
        return RunnerPolicy.from_file(policy_file)
    if policy is None:
        return RunnerPolicy()
    if policy.config_path is not None:
        return RunnerPolicy.from_file(policy.config_path)
    return policy


def run_code(
    code: str,
    language: str,
    *,
    policy: RunnerPolicy | None = None,
    policy_file: str | None = None,
    orchestrator: Orchestrator | None = None,
) -> ExecutionOutcome:
    """Execute one snippet in buffered mode.

    Example:
        ```python
        from polyglot_runner import run_code
        outcome = run_code("print('Hello, World!')", "python")
        outcome.stdout  # "Hello, World!\\n"
        ```
    """
    if orchestrator is not None and (policy is not None or policy_file is not None):
        raise ValueError("Provide either 'orchestrator' or a policy, not both")
    if orchestrator is None:
        orchestrator = Orchestrator(_resolve_policy(policy, policy_file))
    return orchestrator.execute(ExecutionRequest(language=language, source_code=code))
