from __future__ import annotations

from typing import Iterator, Protocol

from .types import ProcessChunk, ProcessResult, ProcessSpec


class ProcessBackend(Protocol):
    """Anything that can supervise a child process for the toolchain adapters."""

    def run(self, spec: ProcessSpec) -> ProcessResult:
        """Run one process to completion and return its buffered result.

        Example:
            ```python
            result = backend.run(ProcessSpec(argv=("true",), cwd=Path("/tmp"), env={}, timeout_seconds=5))
            ```
        """
        ...

    def stream(self, spec: ProcessSpec) -> Iterator[ProcessChunk | ProcessResult]:
        """Yield output chunks in arrival order followed by one final result.

        Example:
            ```python
            for item in backend.stream(spec):
                ...
            ```
        """
        ...
