"""
In-process isolated executor.

Runs user code inside a single interpreter worker owned by one session.
The worker's filesystem and interpreter globals are shared between runs,
so executions are serialised with an internal lock no matter how many
slots the queue grants.  Projects are screened by ``CodeChecker`` first,
and the worker applies its own resource limits and audit hook.

Lifecycle:
  uninitialized -> initializing -> ready
A timeout or cancel kills the worker and drops back to *uninitialized*;
the next execution starts a fresh worker.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from enum import Enum

from structlog import get_logger

from exercise_runner.config import InterpreterConfig
from exercise_runner.sandbox.backend import ExecutionBackend
from exercise_runner.sandbox.cancellation import CancellationToken, CancelReason
from exercise_runner.sandbox.errors import BackendInitializationError, RuntimeFaultError
from exercise_runner.sandbox.models import (
    BackendKind,
    ExecutionRequest,
    ExecutionResult,
    InterpreterMetadata,
)
from exercise_runner.sandbox.security import (
    CodeChecker,
    normalize_path,
    validate_project_files,
)
from exercise_runner.sandbox.worker import InterpreterWorker

logger = get_logger()

WorkerFactory = Callable[[], InterpreterWorker]


class InterpreterState(str, Enum):
    """Worker availability."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class InProcessExecutor(ExecutionBackend):
    """Session-scoped interpreter backend with lazy, shared initialization."""

    def __init__(
        self,
        config: InterpreterConfig | None = None,
        worker_factory: WorkerFactory | None = None,
    ) -> None:
        self._config = config or InterpreterConfig()
        self._worker_factory = worker_factory or self._default_worker
        self._checker = CodeChecker(self._config.blocked_modules)
        self._state = InterpreterState.UNINITIALIZED
        self._worker: InterpreterWorker | None = None
        self._init_task: asyncio.Task[InterpreterWorker] | None = None
        self._load_time_ms = 0.0
        self._lock = asyncio.Lock()
        self._active: dict[str, CancellationToken] = {}

    @property
    def kind(self) -> BackendKind:
        return BackendKind.IN_PROCESS

    @property
    def state(self) -> InterpreterState:
        return self._state

    @property
    def worker_pid(self) -> int | None:
        return self._worker.pid if self._worker else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Warm the worker up without running anything."""
        await self._ensure_ready()

    async def shutdown(self) -> None:
        """Stop the worker; a later execution would start a new one."""
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        await self._reset()
        logger.info("In-process executor shut down")

    async def _ensure_ready(self) -> tuple[InterpreterWorker, bool]:
        """Return a ready worker and whether this call had to wait for startup."""
        worker = self._worker
        if self._state is InterpreterState.READY and worker is not None and worker.alive:
            return worker, False

        if self._state is InterpreterState.READY:
            logger.warning("Interpreter worker died, restarting", pid=self.worker_pid)
            await self._reset()

        if self._init_task is None:
            self._state = InterpreterState.INITIALIZING
            self._init_task = asyncio.create_task(self._start_worker())

        task = self._init_task
        try:
            worker = await asyncio.shield(task)
        except BaseException:
            if self._init_task is task and task.done():
                self._init_task = None
                self._state = InterpreterState.UNINITIALIZED
            raise
        return worker, True

    async def _start_worker(self) -> InterpreterWorker:
        worker = self._worker_factory()
        try:
            load_time_ms = await worker.start()
        except BackendInitializationError:
            logger.error("Interpreter worker failed to start")
            raise
        except Exception as exc:
            await worker.terminate()
            raise BackendInitializationError(f"Interpreter worker failed to start: {exc}") from exc

        self._worker = worker
        self._load_time_ms = load_time_ms
        self._state = InterpreterState.READY
        self._init_task = None
        return worker

    async def _reset(self) -> None:
        worker, self._worker = self._worker, None
        if self._init_task is None:
            self._state = InterpreterState.UNINITIALIZED
        if worker is not None:
            await worker.terminate()

    def _default_worker(self) -> InterpreterWorker:
        return InterpreterWorker(
            python_executable=self._config.python_executable,
            max_output_size=self._config.max_output_size,
            init_timeout=self._config.init_timeout,
            scratch_dir=self._config.scratch_dir,
            limits={
                "memory_mb": self._config.memory_limit_mb,
                "file_size_mb": self._config.file_size_limit_mb,
                "cpu_seconds": self._config.cpu_limit_seconds,
                "processes": self._config.max_processes,
            },
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        request: ExecutionRequest,
        token: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run a request in the session's worker."""
        token = token or CancellationToken(request.id)
        files = validate_project_files(request.files, request.entry_point)
        entry = normalize_path(request.entry_point)
        self._checker.check_project(files, request.id)

        async with self._lock:
            token.raise_if_cancelled()
            worker, cold = await self._ensure_ready()

            async def teardown() -> None:
                if self._worker is worker:
                    await self._reset()
                else:
                    await worker.terminate()

            self._active[request.id] = token
            token.add_teardown(teardown)
            run_dir = f"run-{request.id}"
            started = time.monotonic()
            try:
                token.raise_if_cancelled()
                for file in files:
                    await worker.write_file(f"{run_dir}/{file.path}", file.content)
                reply = await worker.run(run_dir, entry)
            except RuntimeFaultError:
                # A fired token means the worker was killed on purpose
                token.raise_if_cancelled()
                logger.error("Interpreter worker fault", request_id=request.id)
                await self._reset()
                raise
            finally:
                self._active.pop(request.id, None)
                token.remove_teardown(teardown)
                if worker.alive:
                    await self._cleanup(worker, run_dir, request.id)

        duration_ms = (time.monotonic() - started) * 1000
        logger.debug(
            "In-process execution finished",
            request_id=request.id,
            duration_ms=round(duration_ms, 2),
            error=reply.get("error"),
        )
        return ExecutionResult(
            stdout=reply.get("stdout", ""),
            stderr=reply.get("stderr", ""),
            error_summary=reply.get("error"),
            duration_ms=duration_ms,
            truncated=bool(reply.get("truncated")),
            metadata=InterpreterMetadata(
                worker_pid=worker.pid,
                load_time_ms=round(self._load_time_ms, 2),
                cold_start=cold,
            ),
        )

    async def cancel(self, request_id: str) -> None:
        """Cancel a running request by resetting the worker."""
        token = self._active.get(request_id)
        if token is not None:
            await token.cancel(CancelReason.CANCELED)

    async def _cleanup(self, worker: InterpreterWorker, run_dir: str, request_id: str) -> None:
        try:
            await worker.remove(run_dir)
        except RuntimeFaultError as exc:
            logger.warning(
                "Could not remove execution files, resetting worker",
                request_id=request_id,
                error=str(exc),
            )
            await self._reset()
