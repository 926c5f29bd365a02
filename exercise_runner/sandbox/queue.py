"""
Execution queue and lifecycle manager.

Admission control in front of the execution backends:
  - at most ``max_concurrent`` in-flight executions per queue (one queue per
    session), further requests wait in FIFO order
  - an optional ``GlobalAdmission`` limiter shared by every session
  - a hard wall-clock timeout per request, independent of the backend
  - explicit cancellation by request id

A request's slot is only handed to the next waiter once the backend
resource it used has been reset or destroyed.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict, deque
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field

from structlog import get_logger

from exercise_runner.sandbox.backend import ExecutionBackend
from exercise_runner.sandbox.cancellation import CancellationToken, CancelReason
from exercise_runner.sandbox.errors import (
    BackendInitializationError,
    ExecutionCanceledError,
    ExecutionTimeoutError,
)
from exercise_runner.sandbox.models import (
    BackendKind,
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
)
from exercise_runner.sandbox.security import validate_project_files

logger = get_logger()

_HISTORY_SIZE = 256


class GlobalAdmission:
    """Concurrency limit shared by the queues of all sessions."""

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)

    async def acquire(self, token: CancellationToken) -> None:
        """Wait for a permit; gives up when the token fires."""
        token.raise_if_cancelled()
        acquire = asyncio.ensure_future(self._semaphore.acquire())
        fired = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({acquire, fired}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._abandon(acquire)
            raise
        finally:
            fired.cancel()

        if token.cancelled:
            self._abandon(acquire)
            token.raise_if_cancelled()

    def release(self) -> None:
        self._semaphore.release()

    def _abandon(self, acquire: asyncio.Future) -> None:
        if not acquire.done():
            acquire.cancel()
        elif not acquire.cancelled():
            self._semaphore.release()


@dataclass
class ExecutionHandle:
    """Queue-side bookkeeping for one request."""

    request: ExecutionRequest
    token: CancellationToken
    state: ExecutionState = ExecutionState.QUEUED
    admission: asyncio.Future | None = None
    enqueued_at: float = field(default_factory=time.monotonic)


class ExecutionQueue:
    """Per-session admission control, timeouts and cancellation."""

    def __init__(
        self,
        backends: Mapping[BackendKind, ExecutionBackend],
        max_concurrent: int = 1,
        global_admission: GlobalAdmission | None = None,
        default_timeout_ms: int = 10_000,
        max_timeout_ms: int = 60_000,
        drain_timeout: float = 5.0,
        session_id: str | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._backends = dict(backends)
        self._max_concurrent = max_concurrent
        self._global = global_admission
        self._default_timeout_ms = default_timeout_ms
        self._max_timeout_ms = max_timeout_ms
        self._drain_timeout = drain_timeout
        self.session_id = session_id

        self._slots_in_use = 0
        self._waiters: deque[ExecutionHandle] = deque()
        self._handles: dict[str, ExecutionHandle] = {}
        self._history: OrderedDict[str, ExecutionState] = OrderedDict()
        self._baseline_slots = max_concurrent
        self._slot_overrides: dict[object, int] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def pending(self) -> int:
        """Requests waiting for a slot."""
        return len(self._waiters)

    @property
    def running(self) -> int:
        """Slots currently held."""
        return self._slots_in_use

    def state(self, request_id: str) -> ExecutionState | None:
        """Current (or last known terminal) state of a request."""
        handle = self._handles.get(request_id)
        if handle is not None:
            return handle.state
        return self._history.get(request_id)

    def resize(self, max_concurrent: int) -> None:
        """Change the number of slots; waiters are admitted if room opens up."""
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._max_concurrent = max_concurrent
        while self._waiters and self._slots_in_use < self._max_concurrent:
            self._grant_next()

    @contextmanager
    def slot_limit(self, max_concurrent: int | None) -> Iterator[None]:
        """
        Temporarily change the number of slots.

        Overlapping overrides stack: the most recently entered one that is
        still active applies, and the limit in force before the first one
        comes back when the last one exits.
        """
        if max_concurrent is None:
            yield
            return
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if not self._slot_overrides:
            self._baseline_slots = self._max_concurrent
        key = object()
        self._slot_overrides[key] = max_concurrent
        self.resize(max_concurrent)
        try:
            yield
        finally:
            del self._slot_overrides[key]
            if self._slot_overrides:
                self.resize(next(reversed(self._slot_overrides.values())))
            else:
                self.resize(self._baseline_slots)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """
        Queue, run and await one request.

        Raises:
            ProjectValidationError: the project is rejected before queueing.
            ExecutionTimeoutError: the hard timeout fired (after teardown).
            ExecutionCanceledError: the request was canceled.
            ExecutionError: any other backend failure.
        """
        validate_project_files(request.files, request.entry_point)
        backend = self._backends.get(request.backend_kind)
        if backend is None:
            raise BackendInitializationError(
                f"No backend configured for {request.backend_kind.value}",
                request_id=request.id,
            )

        handle = ExecutionHandle(request=request, token=CancellationToken(request.id))
        self._handles[request.id] = handle
        self._transition(handle, ExecutionState.QUEUED)
        try:
            await self._admit(handle)
            try:
                return await self._run(handle, backend)
            finally:
                if self._global is not None:
                    self._global.release()
                self._release_slot()
        except ExecutionTimeoutError:
            self._transition(handle, ExecutionState.TIMED_OUT)
            raise
        except (ExecutionCanceledError, asyncio.CancelledError):
            self._transition(handle, ExecutionState.CANCELED)
            raise
        except Exception:
            self._transition(handle, ExecutionState.FAILED)
            raise
        finally:
            self._forget(handle)

    async def cancel(self, request_id: str) -> bool:
        """
        Cancel a queued or running request.

        Returns False when the request is unknown or already finished.
        Returns once the backend resource has been torn down.
        """
        handle = self._handles.get(request_id)
        if handle is None or handle.state.is_terminal:
            return False

        admission = handle.admission
        if admission is not None and not admission.done():
            self._waiters.remove(handle)
            admission.set_exception(
                ExecutionCanceledError("Execution canceled while queued", request_id=request_id)
            )
            logger.info("Queued execution canceled", request_id=request_id)

        await handle.token.cancel(CancelReason.CANCELED)
        return True

    async def cancel_all(self) -> None:
        """Cancel every queued and running request."""
        for request_id in list(self._handles):
            await self.cancel(request_id)

    async def _admit(self, handle: ExecutionHandle) -> None:
        if self._slots_in_use < self._max_concurrent and not self._waiters:
            self._slots_in_use += 1
        else:
            handle.admission = asyncio.get_running_loop().create_future()
            self._waiters.append(handle)
            logger.debug(
                "Execution waiting for a slot",
                request_id=handle.request.id,
                session_id=self.session_id,
                position=len(self._waiters),
            )
            try:
                await handle.admission
            except asyncio.CancelledError:
                if handle in self._waiters:
                    self._waiters.remove(handle)
                elif handle.admission.done() and not handle.admission.cancelled():
                    self._release_slot()
                raise

        if self._global is not None:
            try:
                await self._global.acquire(handle.token)
            except BaseException:
                self._release_slot()
                raise

    async def _run(self, handle: ExecutionHandle, backend: ExecutionBackend) -> ExecutionResult:
        request, token = handle.request, handle.token
        # Backends read the ceiling from the request
        request.timeout_ms = self._effective_timeout_ms(request)
        timeout = request.timeout
        token.raise_if_cancelled()

        self._transition(handle, ExecutionState.RUNNING)
        started = time.monotonic()
        task = asyncio.ensure_future(backend.execute(request, token))
        fired = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, fired},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await token.cancel(CancelReason.CANCELED)
            await self._drain(task)
            raise
        finally:
            fired.cancel()

        if task in done:
            result = task.result()
            self._transition(handle, ExecutionState.COMPLETED)
            return result

        reason = token.reason if token.cancelled else CancelReason.TIMEOUT
        await token.cancel(reason)
        await self._drain(task)

        elapsed_ms = (time.monotonic() - started) * 1000
        if reason is CancelReason.TIMEOUT:
            logger.warning(
                "Execution hit hard timeout",
                request_id=request.id,
                session_id=self.session_id,
                backend=request.backend_kind.value,
                timeout_s=timeout,
            )
            raise ExecutionTimeoutError(
                f"Execution timed out after {timeout:g}s",
                request_id=request.id,
                elapsed_ms=elapsed_ms,
            )
        raise ExecutionCanceledError("Execution canceled", request_id=request.id)

    async def _drain(self, task: asyncio.Future) -> None:
        """Wait for the backend call to unwind after its resources were torn down."""
        done, _ = await asyncio.wait({task}, timeout=self._drain_timeout)
        if not done:
            task.cancel()
            await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Backend call unwound", error=str(task.exception()))

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    def _release_slot(self) -> None:
        self._slots_in_use -= 1
        if self._waiters and self._slots_in_use < self._max_concurrent:
            self._grant_next()

    def _grant_next(self) -> None:
        while self._waiters:
            handle = self._waiters.popleft()
            if handle.admission is not None and not handle.admission.done():
                self._slots_in_use += 1
                handle.admission.set_result(None)
                return

    def _effective_timeout_ms(self, request: ExecutionRequest) -> int:
        timeout_ms = request.timeout_ms or self._default_timeout_ms
        return min(timeout_ms, self._max_timeout_ms)

    def _transition(self, handle: ExecutionHandle, state: ExecutionState) -> None:
        handle.state = state
        log = logger.info if state.is_terminal else logger.debug
        log(
            "Execution state changed",
            request_id=handle.request.id,
            session_id=self.session_id,
            backend=handle.request.backend_kind.value,
            state=state.value,
        )

    def _forget(self, handle: ExecutionHandle) -> None:
        self._handles.pop(handle.request.id, None)
        self._history[handle.request.id] = handle.state
        while len(self._history) > _HISTORY_SIZE:
            self._history.popitem(last=False)
