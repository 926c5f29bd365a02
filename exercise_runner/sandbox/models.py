"""Data models for the code execution backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal
from uuid import uuid4

# Ceiling used when neither the request nor a queue supplied one
DEFAULT_TIMEOUT_MS = 10_000


class BackendKind(str, Enum):
    """Which execution backend handles a request."""

    IN_PROCESS = "in_process"
    REMOTE = "remote"


class ExecutionMode(str, Enum):
    """Single script or multi-file project."""

    SINGLE = "single"
    PROJECT = "project"


class ExecutionState(str, Enum):
    """Lifecycle of a request inside the execution queue."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionState.QUEUED, ExecutionState.RUNNING)


@dataclass(frozen=True)
class ProjectFile:
    """A single file of the virtual project."""

    path: str
    content: str


@dataclass
class ExecutionRequest:
    """Request to execute user code on one backend."""

    files: list[ProjectFile]
    entry_point: str = "main.py"
    mode: ExecutionMode = ExecutionMode.PROJECT
    backend_kind: BackendKind = BackendKind.IN_PROCESS
    timeout_ms: int | None = None
    session_id: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)

    @classmethod
    def single(
        cls,
        code: str,
        backend_kind: BackendKind = BackendKind.IN_PROCESS,
        timeout_ms: int | None = None,
        session_id: str | None = None,
    ) -> "ExecutionRequest":
        """Wrap a lone snippet as a one-file project."""
        return cls(
            files=[ProjectFile(path="main.py", content=code)],
            entry_point="main.py",
            mode=ExecutionMode.SINGLE,
            backend_kind=backend_kind,
            timeout_ms=timeout_ms,
            session_id=session_id,
        )

    @property
    def timeout(self) -> float:
        return (self.timeout_ms or DEFAULT_TIMEOUT_MS) / 1000


@dataclass(frozen=True)
class InterpreterMetadata:
    """Metadata reported by the in-process interpreter worker."""

    worker_pid: int | None = None
    load_time_ms: float = 0.0
    cold_start: bool = False
    kind: Literal["in_process"] = "in_process"


@dataclass(frozen=True)
class SandboxMetadata:
    """Metadata reported by the remote sandbox service."""

    sandbox_id: str | None = None
    image: str | None = None
    exit_code: int | None = None
    provision_attempts: int = 1
    kind: Literal["remote"] = "remote"


BackendMetadata = InterpreterMetadata | SandboxMetadata


@dataclass
class ExecutionResult:
    """Captured output of one execution."""

    stdout: str = ""
    stderr: str = ""
    error_summary: str | None = None
    duration_ms: float = 0.0
    metadata: BackendMetadata | None = None
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.error_summary is None
