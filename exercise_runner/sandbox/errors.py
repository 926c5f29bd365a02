"""Exceptions raised by the execution backends and the queue."""

from __future__ import annotations


class ExecutionError(Exception):
    """Base class for every execution-layer failure."""

    code = "EXECUTION_ERROR"

    def __init__(self, message: str, *, request_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id


class ProjectValidationError(ExecutionError):
    """The project is unsafe or malformed; nothing was sent to a backend."""

    code = "VALIDATION_ERROR"


class BackendInitializationError(ExecutionError):
    """The backend could not be brought up."""

    code = "BACKEND_UNAVAILABLE"


class SandboxUnavailableError(BackendInitializationError):
    """Provisioning a remote sandbox failed."""

    code = "SANDBOX_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        *,
        request_id: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message, request_id=request_id)
        self.transient = transient


class ExecutionTimeoutError(ExecutionError):
    """The execution exceeded its wall-clock limit. Raised after teardown."""

    code = "EXECUTION_TIMEOUT"

    def __init__(
        self,
        message: str,
        *,
        request_id: str | None = None,
        elapsed_ms: float = 0.0,
    ) -> None:
        super().__init__(message, request_id=request_id)
        self.elapsed_ms = elapsed_ms


class ExecutionCanceledError(ExecutionError):
    """The execution was canceled by its owner."""

    code = "EXECUTION_CANCELED"


class RuntimeFaultError(ExecutionError):
    """The backend itself broke while running user code."""

    code = "RUNTIME_FAULT"


class SandboxTransportError(RuntimeFaultError):
    """The remote sandbox service failed after the sandbox was provisioned."""

    code = "SANDBOX_TRANSPORT"
