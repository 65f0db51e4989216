"""Per-language strategies for turning source into a running program."""

from __future__ import annotations

import logging
import re
from abc import ABC
from dataclasses import dataclass
from typing import Iterator, Mapping

from .config import ToolchainDescriptor, render_command
from .engine import ProcessBackend
from .types import FailureKind, Language, LaunchProfile, ProcessChunk, ProcessResult, ProcessSpec
from .workspace import Workspace

logger = logging.getLogger(__name__)

MISSING_C_MAIN = "Compilation Error: undefined reference to `main`\nError: main function not found"
MISSING_C_HEADERS = "Compilation Error: Missing required header files"
MISSING_JAVA_CLASS = "Compilation Error: class, interface, or enum expected"
MISSING_JAVA_MAIN = (
    "Error: Main method not found in class {entry}\n"
    "Please define the main method as:\n"
    "   public static void main(String[] args)"
)

_C_MAIN = re.compile(r"\bint\s+main\b")
_C_INCLUDE = re.compile(r"#\s*include\b")
_JAVA_CLASS = re.compile(r"\bclass\s+([A-Za-z_$][\w$]*)")
_JAVA_PUBLIC_CLASS = re.compile(r"\bpublic\s+(?:(?:final|abstract|strictfp)\s+)*class\s+([A-Za-z_$][\w$]*)")
_JAVA_MAIN = re.compile(r"\bpublic\s+static\s+void\s+main\s*\(\s*(?:final\s+)?String\b")


@dataclass(slots=True)
class CompileResult:
    """Outcome of a precheck or compile step.

    Example:
        ```python
        result = CompileResult(ok=True)
        ```
    """

    ok: bool
    failure_kind: FailureKind | None = None
    message: str = ""
    process: ProcessResult | None = None

    @classmethod
    def failed(cls, kind: FailureKind, message: str, process: ProcessResult | None = None) -> "CompileResult":
        """Build a failed result.

        Example:
            ```python
            CompileResult.failed(FailureKind.COMPILE_FAILURE, "main.c:1: error")
            ```
        """
        return cls(ok=False, failure_kind=kind, message=message, process=process)


class ToolchainAdapter(ABC):
    """Compile (if needed) and run one language inside a workspace.

    Adapters hold no per-request state, so one instance serves concurrent
    requests.

    Example:
        ```python
        adapter = build_adapters(DEFAULT_DESCRIPTORS, ProcessRunner(), profile)[Language.C]
        ```
    """

    def __init__(self, descriptor: ToolchainDescriptor, runner: ProcessBackend, profile: LaunchProfile) -> None:
        """Bind a descriptor to the process backend and launch limits.

        Example:
            ```python
            NativeAdapter(DEFAULT_DESCRIPTORS[Language.C], ProcessRunner(), profile)
            ```
        """
        self.descriptor = descriptor
        self._runner = runner
        self._profile = profile

    @property
    def language(self) -> Language:
        """Return the language this adapter serves.

        Example:
            ```python
            adapter.language  # Language.C
            ```
        """
        return self.descriptor.language

    def precheck(self, source_code: str) -> CompileResult | None:
        """Return a failure for source that can never build, else None.

        Example:
            ```python
            adapter.precheck("int main() {}")  # missing include
            ```
        """
        return None

    def entry_name(self, source_code: str) -> str:
        """Return the file stem used for the source.

        Example:
            ```python
            adapter.entry_name("print(1)")  # "main"
            ```
        """
        return "main"

    def source_filename(self, source_code: str) -> str:
        """Return the name the source is written under.

        Example:
            ```python
            adapter.source_filename("print(1)")  # "main.py"
            ```
        """
        return self.entry_name(source_code) + self.descriptor.source_extension

    def prepare(self, workspace: Workspace) -> CompileResult:
        """Build the runnable artifact; a no-op for interpreted languages.

        Example:
            ```python
            compiled = adapter.prepare(workspace)
            ```
        """
        template = self.descriptor.compile_command
        if template is None:
            return CompileResult(ok=True)
        if self.descriptor.artifact_name:
            workspace.artifact_path = workspace.root_dir / self.descriptor.artifact_name
        spec = self._spec(template, workspace, memory_limited=False)
        result = self._runner.run(spec)
        if result.launch_error is not None:
            return CompileResult.failed(
                FailureKind.LAUNCH_FAILURE,
                f"Toolchain unavailable: {result.launch_error}",
                result,
            )
        if result.timed_out:
            return CompileResult.failed(
                FailureKind.TIMEOUT,
                f"Compilation timed out after {_seconds(spec.timeout_seconds)}s",
                result,
            )
        if result.returncode != 0 or result.output_exceeded:
            message = result.stderr or result.stdout or "Compilation failed"
            return CompileResult.failed(FailureKind.COMPILE_FAILURE, message, result)
        if result.stderr:
            logger.debug("%s compiler warnings: %s", self.descriptor.display_name, result.stderr)
        return CompileResult(ok=True, process=result)

    def execute(self, workspace: Workspace) -> Iterator[ProcessChunk | ProcessResult]:
        """Start the program and stream its output.

        Example:
            ```python
            for item in adapter.execute(workspace):
                ...
            ```
        """
        spec = self._spec(
            self.descriptor.run_command,
            workspace,
            memory_limited=self.descriptor.memory_limited,
        )
        return self._runner.stream(spec)

    def _spec(self, template: tuple[str, ...], workspace: Workspace, *, memory_limited: bool) -> ProcessSpec:
        """Render an argv template against the workspace paths.

        Example:
            ```python
            spec = adapter._spec(descriptor.run_command, workspace, memory_limited=True)
            ```
        """
        source = workspace.source_path
        if source is None:
            raise RuntimeError("source must be written before building or running")
        values = {
            "source": str(source),
            "artifact": str(workspace.artifact_path or workspace.root_dir / "main"),
            "workdir": str(workspace.root_dir),
            "entry": source.stem,
        }
        argv = render_command(template, values)
        return self._profile.spec(argv, workspace.root_dir, memory_limited=memory_limited)


class PythonAdapter(ToolchainAdapter):
    """`python3 -I -u main.py`; no compile step and no precheck.

    Example:
        ```python
        PythonAdapter(DEFAULT_DESCRIPTORS[Language.PYTHON], ProcessRunner(), profile)
        ```
    """


class NativeAdapter(ToolchainAdapter):
    """C and C++: both need `int main` and at least one include.

    Example:
        ```python
        NativeAdapter(DEFAULT_DESCRIPTORS[Language.CPP], ProcessRunner(), profile)
        ```
    """

    def precheck(self, source_code: str) -> CompileResult | None:
        """Require `int main` first, then an include.

        Example:
            ```python
            adapter.precheck("#include <stdio.h>\\nint main() {}")  # None
            ```
        """
        if not _C_MAIN.search(source_code):
            return CompileResult.failed(FailureKind.MISSING_ENTRY_POINT, MISSING_C_MAIN)
        if not _C_INCLUDE.search(source_code):
            return CompileResult.failed(FailureKind.MISSING_INCLUDE_OR_CLASS, MISSING_C_HEADERS)
        return None


class JavaAdapter(ToolchainAdapter):
    """javac into the workspace, then `java -cp <workspace> <Entry>`.

    Example:
        ```python
        JavaAdapter(DEFAULT_DESCRIPTORS[Language.JAVA], ProcessRunner(), profile)
        ```
    """

    def precheck(self, source_code: str) -> CompileResult | None:
        """Require a class declaration first, then a `main` method.

        Example:
            ```python
            adapter.precheck("interface Greeter {}")  # missing class
            ```
        """
        if not _JAVA_CLASS.search(source_code):
            return CompileResult.failed(FailureKind.MISSING_INCLUDE_OR_CLASS, MISSING_JAVA_CLASS)
        if not _JAVA_MAIN.search(source_code):
            return CompileResult.failed(
                FailureKind.MISSING_ENTRY_POINT,
                MISSING_JAVA_MAIN.format(entry=self.entry_name(source_code)),
            )
        return None

    def entry_name(self, source_code: str) -> str:
        """Return the public class name, else the first class, else `Main`.

        Example:
            ```python
            adapter.entry_name("public class Solution {}")  # "Solution"
            ```
        """
        # javac insists that a public class lives in a file of the same name.
        match = _JAVA_PUBLIC_CLASS.search(source_code) or _JAVA_CLASS.search(source_code)
        return match.group(1) if match else "Main"


ADAPTER_TYPES: Mapping[Language, type[ToolchainAdapter]] = {
    Language.PYTHON: PythonAdapter,
    Language.C: NativeAdapter,
    Language.CPP: NativeAdapter,
    Language.JAVA: JavaAdapter,
}


def build_adapters(
    descriptors: Mapping[Language, ToolchainDescriptor],
    runner: ProcessBackend,
    profile: LaunchProfile,
) -> dict[Language, ToolchainAdapter]:
    """Instantiate one adapter per supported language.

    Example:
        ```python
        adapters = build_adapters(DEFAULT_DESCRIPTORS, ProcessRunner(), profile)
        ```
    """
    return {
        language: ADAPTER_TYPES[language](descriptors[language], runner, profile)
        for language in Language
    }


def _seconds(value: float) -> str:
    """Render a timeout without a trailing `.0`.

    Example:
        ```python
        _seconds(10.0)  # "10"
        ```
    """
    return str(int(value)) if float(value).is_integer() else f"{value:g}"
