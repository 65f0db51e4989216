from .execution.types import ExecutionOutcome, ExecutionRequest, FailureKind, Language, OutputEvent
from .policy import RunnerPolicy
from .runner import Orchestrator, run_code
from .validator import validate

__all__ = [
    "ExecutionOutcome",
    "ExecutionRequest",
    "FailureKind",
    "Language",
    "Orchestrator",
    "OutputEvent",
    "RunnerPolicy",
    "run_code",
    "validate",
]
