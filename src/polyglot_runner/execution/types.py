from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping
from uuid import uuid4


class Language(str, Enum):
    """Languages with a registered toolchain adapter.

    Example:
        ```python
        Language("cpp") is Language.CPP
        ```
    """

    PYTHON = "python"
    C = "c"
    CPP = "cpp"
    JAVA = "java"


class FailureKind(str, Enum):
    """Why an execution request did not succeed.

    Example:
        ```python
        FailureKind.TIMEOUT.value  # "Timeout"
        ```
    """

    EMPTY_CODE = "EmptyCode"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"
    RESTRICTED_CONSTRUCT = "RestrictedConstruct"
    UNSUPPORTED_LANGUAGE = "UnsupportedLanguage"
    MISSING_ENTRY_POINT = "MissingEntryPoint"
    MISSING_INCLUDE_OR_CLASS = "MissingIncludeOrClass"
    COMPILE_FAILURE = "CompileFailure"
    LAUNCH_FAILURE = "LaunchFailure"
    RUNTIME_FAILURE = "RuntimeFailure"
    TIMEOUT = "Timeout"
    OUTPUT_LIMIT_EXCEEDED = "OutputLimitExceeded"
    INTERNAL_ERROR = "InternalError"

    @property
    def is_rejection(self) -> bool:
        """Return True for kinds produced by the validator before execution.

        Example:
            ```python
            FailureKind.EMPTY_CODE.is_rejection  # True
            ```
        """
        return self in _REJECTIONS


_REJECTIONS = frozenset(
    {
        FailureKind.EMPTY_CODE,
        FailureKind.PAYLOAD_TOO_LARGE,
        FailureKind.RESTRICTED_CONSTRUCT,
        FailureKind.UNSUPPORTED_LANGUAGE,
    }
)


def _new_request_id() -> str:
    """Return a collision-resistant request identifier.

    Example:
        ```python
        request_id = _new_request_id()
        ```
    """
    return uuid4().hex


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """One user submission, immutable once accepted.

    Example:
        ```python
        req = ExecutionRequest(language="python", source_code="print('hi')")
        ```
    """

    language: str
    source_code: str
    request_id: str = field(default_factory=_new_request_id)


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Normalized, language-agnostic result of one execution request.

    `stdout` and `stderr` hold the concatenated `output` and `error` events of
    the request, so buffered and streaming callers observe the same text.

    Example:
        ```python
        out = ExecutionOutcome(success=True, stdout="hi\\n", execution_time_ms=12)
        ```
    """

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    execution_time_ms: int = 0
    failure_kind: FailureKind | None = None

    def to_response(self) -> dict[str, Any]:
        """Render the request/response endpoint payload.

        Example:
            ```python
            body = outcome.to_response()  # {"success": True, "output": "hi\\n", ...}
            ```
        """
        body: dict[str, Any] = {"success": self.success}
        if self.stdout:
            body["output"] = self.stdout
        if not self.success:
            body["error"] = self.stderr or "Execution failed"
        body["executionTime"] = self.execution_time_ms
        return body


class EventType(str, Enum):
    """Kinds of streaming events.

    Example:
        ```python
        EventType.COMPLETE.value  # "complete"
        ```
    """

    START = "start"
    OUTPUT = "output"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass(frozen=True, slots=True)
class OutputEvent:
    """One increment of a streaming execution.

    Example:
        ```python
        event = OutputEvent.output("hi\\n")
        ```
    """

    type: EventType
    data: str = ""
    outcome: ExecutionOutcome | None = None

    @classmethod
    def start(cls) -> "OutputEvent":
        """Build the lifecycle start marker.

        Example:
            ```python
            OutputEvent.start()
            ```
        """
        return cls(EventType.START)

    @classmethod
    def output(cls, data: str) -> "OutputEvent":
        """Build a stdout chunk event.

        Example:
            ```python
            OutputEvent.output("line\\n")
            ```
        """
        return cls(EventType.OUTPUT, data)

    @classmethod
    def error(cls, message: str) -> "OutputEvent":
        """Build a stderr chunk or terminal error event.

        Example:
            ```python
            OutputEvent.error("Execution failed")
            ```
        """
        return cls(EventType.ERROR, message)

    @classmethod
    def complete(cls, outcome: ExecutionOutcome) -> "OutputEvent":
        """Build the terminal event carrying the final outcome.

        Example:
            ```python
            OutputEvent.complete(ExecutionOutcome(success=True))
            ```
        """
        return cls(EventType.COMPLETE, outcome=outcome)

    def to_message(self) -> dict[str, Any]:
        """Render the JSON message sent over the streaming channel.

        Example:
            ```python
            OutputEvent.error("boom").to_message()  # {"type": "error", "message": "boom"}
            ```
        """
        if self.type is EventType.OUTPUT:
            return {"type": "output", "data": self.data}
        if self.type is EventType.ERROR:
            return {"type": "error", "message": self.data}
        if self.type is EventType.COMPLETE:
            outcome = self.outcome or ExecutionOutcome(success=False)
            return {
                "type": "complete",
                "executionTime": outcome.execution_time_ms,
                "success": outcome.success,
            }
        return {"type": self.type.value}


class StreamName(str, Enum):
    """Child process pipes the runner reads from.

    Example:
        ```python
        StreamName.STDERR.value  # "stderr"
        ```
    """

    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True, slots=True)
class ProcessSpec:
    """Everything needed to spawn one child process without a shell.

    Example:
        ```python
        spec = ProcessSpec(argv=("python3", "main.py"), cwd=Path("/tmp/ws"), env={"PATH": "/usr/bin"}, timeout_seconds=10)
        ```
    """

    argv: tuple[str, ...]
    cwd: Path
    env: Mapping[str, str]
    timeout_seconds: float
    user: int | None = None
    group: int | None = None
    memory_limit_mb: int | None = None
    file_size_limit_mb: int | None = None
    max_output_bytes: int | None = None


@dataclass(frozen=True, slots=True)
class ProcessChunk:
    """Decoded text read from one of the child's pipes.

    Example:
        ```python
        chunk = ProcessChunk(StreamName.STDOUT, "hi\\n")
        ```
    """

    stream: StreamName
    data: str


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Terminal record of one supervised child process.

    Example:
        ```python
        result = ProcessResult(argv=("true",), pid=42, returncode=0)
        ```
    """

    argv: tuple[str, ...]
    pid: int | None
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    output_exceeded: bool = False
    launch_error: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        """Return True when the process ran and exited with code 0.

        Example:
            ```python
            ProcessResult(argv=("true",), pid=1, returncode=0).ok  # True
            ```
        """
        return (
            self.launch_error is None
            and not self.timed_out
            and not self.output_exceeded
            and self.returncode == 0
        )


@dataclass(frozen=True, slots=True)
class LaunchProfile:
    """Per-orchestrator limits and identity shared by every spawned process.

    Example:
        ```python
        profile = LaunchProfile(timeout_seconds=10, search_path="/usr/bin:/bin")
        ```
    """

    timeout_seconds: float
    search_path: str
    user: int | None = None
    group: int | None = None
    memory_limit_mb: int | None = None
    file_size_limit_mb: int | None = None
    max_output_bytes: int | None = None

    def environment(self, workdir: Path) -> dict[str, str]:
        """Return the minimal environment for a process rooted at `workdir`.

        Nothing is inherited from the host process.

        Example:
            ```python
            env = profile.environment(Path("/tmp/ws"))
            ```
        """
        return {
            "PATH": self.search_path,
            "HOME": str(workdir),
            "TMPDIR": str(workdir),
            "LANG": "C.UTF-8",
            "LC_ALL": "C.UTF-8",
        }

    def spec(self, argv: list[str] | tuple[str, ...], cwd: Path, *, memory_limited: bool = True) -> ProcessSpec:
        """Build a process spec for `argv` using this profile's limits.

        Example:
            ```python
            spec = profile.spec(["gcc", "main.c"], Path("/tmp/ws"), memory_limited=False)
            ```
        """
        return ProcessSpec(
            argv=tuple(argv),
            cwd=cwd,
            env=self.environment(cwd),
            timeout_seconds=self.timeout_seconds,
            user=self.user,
            group=self.group,
            memory_limit_mb=self.memory_limit_mb if memory_limited else None,
            file_size_limit_mb=self.file_size_limit_mb,
            max_output_bytes=self.max_output_bytes,
        )
