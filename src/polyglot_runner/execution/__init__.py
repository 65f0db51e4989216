from .engine import ProcessBackend
from .process import ProcessRunner
from .types import (
    ExecutionOutcome,
    ExecutionRequest,
    FailureKind,
    Language,
    OutputEvent,
    ProcessResult,
    ProcessSpec,
)
from .workspace import Workspace, WorkspaceManager

__all__ = [
    "ExecutionOutcome",
    "ExecutionRequest",
    "FailureKind",
    "Language",
    "OutputEvent",
    "ProcessBackend",
    "ProcessResult",
    "ProcessRunner",
    "ProcessSpec",
    "Workspace",
    "WorkspaceManager",
]
