"""Code execution backends, admission queue and session facade."""

from exercise_runner.sandbox.executor import ExecutionSession
from exercise_runner.sandbox.models import (
    BackendKind,
    ExecutionMode,
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    ProjectFile,
)
from exercise_runner.sandbox.queue import ExecutionQueue, GlobalAdmission

__all__ = [
    "BackendKind",
    "ExecutionMode",
    "ExecutionQueue",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionSession",
    "ExecutionState",
    "GlobalAdmission",
    "ProjectFile",
]
