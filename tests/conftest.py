from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterator

import pytest

from polyglot_runner import RunnerPolicy
from polyglot_runner.execution.types import ProcessChunk, ProcessResult, ProcessSpec
from polyglot_runner.execution.workspace import Workspace, WorkspaceManager
from polyglot_runner.policy import DEFAULT_SEARCH_PATH

PYTHON3 = shutil.which("python3", path=DEFAULT_SEARCH_PATH)

requires_python3 = pytest.mark.skipif(
    PYTHON3 is None, reason="python3 is not on the default child search path"
)


class SpyRunner:
    """Process backend that records specs and replays canned output."""

    def __init__(
        self,
        *,
        compile_result: ProcessResult | None = None,
        chunks: list[ProcessChunk] | None = None,
        result: ProcessResult | None = None,
    ) -> None:
        self.specs: list[ProcessSpec] = []
        self.compile_result = compile_result
        self.chunks = chunks or []
        self.result = result

    def run(self, spec: ProcessSpec) -> ProcessResult:
        self.specs.append(spec)
        return self.compile_result or ProcessResult(argv=spec.argv, pid=100, returncode=0)

    def stream(self, spec: ProcessSpec) -> Iterator[ProcessChunk | ProcessResult]:
        self.specs.append(spec)
        yield from self.chunks
        yield self.result or ProcessResult(argv=spec.argv, pid=101, returncode=0)


class SpyWorkspaces(WorkspaceManager):
    """Workspace manager that remembers every workspace it handed out."""

    def __init__(self, base_dir: Path) -> None:
        super().__init__(base_dir)
        self.created: list[Workspace] = []
        self.destroyed: list[Workspace] = []

    def create(self, request_id: str) -> Workspace:
        workspace = super().create(request_id)
        self.created.append(workspace)
        return workspace

    def destroy(self, workspace: Workspace) -> None:
        super().destroy(workspace)
        self.destroyed.append(workspace)


@pytest.fixture
def policy(tmp_path: Path) -> RunnerPolicy:
    return RunnerPolicy(
        timeout_seconds=5,
        run_as_user="",
        workspace_dir=str(tmp_path / "workspaces"),
    )


@pytest.fixture
def workspaces(tmp_path: Path) -> SpyWorkspaces:
    return SpyWorkspaces(tmp_path / "spy-workspaces")
