"""
Cancellation token shared by the queue's timer and a running backend.

The backend registers teardown callbacks (worker reset, sandbox release)
while it holds a resource.  Whoever fires first, the hard timeout or an
explicit cancel, runs those callbacks; later callers await the same
teardown instead of repeating it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum

from structlog import get_logger

from exercise_runner.sandbox.errors import ExecutionCanceledError, ExecutionTimeoutError

logger = get_logger()

Teardown = Callable[[], Awaitable[None]]


class CancelReason(str, Enum):
    """Why a token was fired."""

    TIMEOUT = "timeout"
    CANCELED = "canceled"


class CancellationToken:
    """One-shot cancellation signal with exactly-once teardown."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self._event = asyncio.Event()
        self._fired = False
        self._reason: CancelReason | None = None
        self._teardowns: list[Teardown] = []
        self._teardown_task: asyncio.Task[None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._fired

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def add_teardown(self, teardown: Teardown) -> None:
        """Register a callback that releases a resource held by the backend."""
        self._teardowns.append(teardown)

    def remove_teardown(self, teardown: Teardown) -> None:
        """Forget a callback once the resource was released normally."""
        if teardown in self._teardowns:
            self._teardowns.remove(teardown)

    async def cancel(self, reason: CancelReason = CancelReason.CANCELED) -> None:
        """Fire the token and wait until every teardown has finished."""
        if self._teardown_task is None:
            self._reason = reason
            self._fired = True
            self._teardown_task = asyncio.ensure_future(self._run_teardowns())
        await asyncio.shield(self._teardown_task)

    async def wait(self) -> None:
        """Block until the token fired and its teardowns have finished."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Convert a fired token into the matching execution error."""
        if not self.cancelled:
            return
        if self._reason is CancelReason.TIMEOUT:
            raise ExecutionTimeoutError(
                "Execution timed out", request_id=self.request_id
            )
        raise ExecutionCanceledError("Execution canceled", request_id=self.request_id)

    async def _run_teardowns(self) -> None:
        # Release in reverse acquisition order
        try:
            for teardown in reversed(list(self._teardowns)):
                try:
                    await teardown()
                except Exception as exc:
                    logger.error(
                        "Teardown callback failed",
                        request_id=self.request_id,
                        error=str(exc),
                        exc_info=True,
                    )
        finally:
            self._teardowns.clear()
            self._event.set()
        logger.debug(
            "Execution resources torn down",
            request_id=self.request_id,
            reason=self._reason.value if self._reason else None,
        )
