"""
Session-level code execution interface.

One ``ExecutionSession`` per user session: it owns the session's
interpreter worker and execution queue.  The remote executor keeps no
per-session state and is normally shared by every session.
"""

from __future__ import annotations

import time

from structlog import get_logger

from exercise_runner.config import Settings, get_settings
from exercise_runner.sandbox.backend import ExecutionBackend
from exercise_runner.sandbox.errors import BackendInitializationError
from exercise_runner.sandbox.interpreter import InProcessExecutor
from exercise_runner.sandbox.manager import RemoteSandboxExecutor
from exercise_runner.sandbox.models import BackendKind, ExecutionRequest, ExecutionResult
from exercise_runner.sandbox.queue import ExecutionQueue, GlobalAdmission

logger = get_logger()


class ExecutionSession:
    """
    Facade over the queue and the backends of one session.

    Usage::

        session = ExecutionSession("session-1")
        result = await session.execute(ExecutionRequest.single("print(1 + 1)"))
        await session.close()
    """

    def __init__(
        self,
        session_id: str,
        settings: Settings | None = None,
        global_admission: GlobalAdmission | None = None,
        interpreter: ExecutionBackend | None = None,
        remote: ExecutionBackend | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.session_id = session_id
        self._owns_remote = remote is None
        self._interpreter = interpreter or InProcessExecutor(settings.interpreter)
        self._remote = remote or RemoteSandboxExecutor(settings.sandbox)
        self.queue = ExecutionQueue(
            {
                BackendKind.IN_PROCESS: self._interpreter,
                BackendKind.REMOTE: self._remote,
            },
            max_concurrent=settings.queue.max_concurrent_per_session,
            global_admission=global_admission,
            default_timeout_ms=settings.queue.default_timeout_ms,
            max_timeout_ms=settings.queue.max_timeout_ms,
            session_id=session_id,
        )
        self._closed = False
        self.last_used = time.monotonic()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def interpreter(self) -> ExecutionBackend:
        return self._interpreter

    @property
    def busy(self) -> bool:
        """True while requests are queued or running."""
        return self.queue.pending > 0 or self.queue.running > 0

    def idle_for(self, now: float | None = None) -> float:
        """Seconds since the last request started or finished."""
        return (now if now is not None else time.monotonic()) - self.last_used

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one request through the session's queue."""
        if self._closed:
            raise BackendInitializationError(
                f"Session {self.session_id} is closed", request_id=request.id
            )
        request.session_id = self.session_id
        self.last_used = time.monotonic()
        try:
            return await self.queue.execute(request)
        finally:
            self.last_used = time.monotonic()

    async def cancel(self, request_id: str) -> bool:
        return await self.queue.cancel(request_id)

    async def close(self) -> None:
        """Cancel outstanding work and release the session's worker."""
        if self._closed:
            return
        self._closed = True
        await self.queue.cancel_all()
        await self._interpreter.shutdown()
        if self._owns_remote:
            await self._remote.shutdown()
        logger.info("Execution session closed", session_id=self.session_id)
