"""
Runner service for dependency injection and lifecycle management.

The ``SessionRegistry`` owns every execution session of the process and is
stored on ``app.state``; routes receive it through ``Depends``.  Sessions
idle for longer than ``session.idle_ttl`` are closed by a background sweep.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from structlog import get_logger

from exercise_runner.config import Settings, get_settings
from exercise_runner.database import (
    ProgressRepository,
    SubmissionRepository,
    close_db,
    get_session_factory,
    init_db,
)
from exercise_runner.grading.orchestrator import SubmissionOrchestrator
from exercise_runner.grading.ports import (
    InMemoryProgressTracker,
    InMemorySubmissionStore,
    PersistencePort,
    ProgressPort,
)
from exercise_runner.sandbox.backend import ExecutionBackend
from exercise_runner.sandbox.executor import ExecutionSession
from exercise_runner.sandbox.manager import RemoteSandboxExecutor
from exercise_runner.sandbox.queue import GlobalAdmission

logger = get_logger()

BackendFactory = Callable[[], ExecutionBackend]


class SessionRegistry:
    """Creates, hands out and closes execution sessions."""

    def __init__(
        self,
        settings: Settings | None = None,
        persistence: PersistencePort | None = None,
        progress: ProgressPort | None = None,
        remote: ExecutionBackend | None = None,
        interpreter_factory: BackendFactory | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.persistence = persistence or InMemorySubmissionStore()
        self.progress = progress or InMemoryProgressTracker()
        self._global = GlobalAdmission(self._settings.queue.max_concurrent_global)
        self._remote = remote or RemoteSandboxExecutor(self._settings.sandbox)
        self._interpreter_factory = interpreter_factory
        self._sessions: dict[str, ExecutionSession] = {}
        self._orchestrators: dict[str, SubmissionOrchestrator] = {}

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def get(self, session_id: str) -> ExecutionSession | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> ExecutionSession:
        """Return the session, creating it (and its worker slot) on first use."""
        session = self._sessions.get(session_id)
        if session is None:
            interpreter = self._interpreter_factory() if self._interpreter_factory else None
            session = ExecutionSession(
                session_id,
                settings=self._settings,
                global_admission=self._global,
                interpreter=interpreter,
                remote=self._remote,
            )
            self._sessions[session_id] = session
            logger.info("Execution session created", session_id=session_id)
        return session

    def orchestrator(self, session_id: str) -> SubmissionOrchestrator:
        orchestrator = self._orchestrators.get(session_id)
        if orchestrator is None:
            orchestrator = SubmissionOrchestrator(
                self.get_or_create(session_id),
                persistence=self.persistence,
                progress=self.progress,
                config=self._settings.submission,
                queue_config=self._settings.queue,
            )
            self._orchestrators[session_id] = orchestrator
        return orchestrator

    def existing_orchestrator(self, session_id: str) -> SubmissionOrchestrator | None:
        return self._orchestrators.get(session_id)

    async def close_session(self, session_id: str) -> bool:
        """Close a session and release its worker. False if unknown."""
        session = self._sessions.pop(session_id, None)
        self._orchestrators.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def sweep_idle(self, now: float | None = None) -> list[str]:
        """Close sessions idle for longer than ``session.idle_ttl``; returns their IDs."""
        ttl = self._settings.session.idle_ttl
        now = now if now is not None else time.monotonic()
        closed: list[str] = []
        for session_id, session in list(self._sessions.items()):
            if session.busy or session.idle_for(now) < ttl:
                continue
            orchestrator = self._orchestrators.get(session_id)
            if orchestrator is not None and orchestrator.active_submissions:
                continue
            await self.close_session(session_id)
            closed.append(session_id)
        if closed:
            logger.info("Idle sessions closed", session_ids=closed, idle_ttl=ttl)
        return closed

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close_session(session_id)
        await self._remote.shutdown()


def get_registry(request: Request) -> SessionRegistry:
    """Get the session registry for dependency injection."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Runner not initialized")
    return registry


async def _sweep_idle_sessions(registry: SessionRegistry, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await registry.sweep_idle()
        except Exception as e:
            logger.warning("Idle session sweep failed", error=str(e))


@asynccontextmanager
async def runner_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage the registry and the database."""
    settings = get_settings()
    logger.info("Initializing runner...")

    persistence: PersistencePort | None
    progress: ProgressPort | None
    db_ready = False
    try:
        await init_db()
        sf = get_session_factory()
        persistence = SubmissionRepository(sf)
        progress = ProgressRepository(sf)
        db_ready = True
        logger.info("Database persistence enabled")
    except Exception as e:
        logger.warning(
            "Database initialization failed, running in memory-only mode",
            error=str(e),
        )
        persistence = None
        progress = None

    registry = SessionRegistry(settings, persistence=persistence, progress=progress)
    app.state.registry = registry
    sweeper = asyncio.create_task(
        _sweep_idle_sessions(registry, settings.session.sweep_interval)
    )
    logger.info("Runner started")

    yield

    logger.info("Shutting down runner...")
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await registry.close_all()
    app.state.registry = None
    if db_ready:
        await close_db()
    logger.info("Runner stopped")
