import asyncio
import time

import pytest

from exercise_runner.config import SessionConfig, Settings
from exercise_runner.sandbox.errors import ExecutionCanceledError
from exercise_runner.sandbox.models import BackendKind, ExecutionRequest
from exercise_runner.services.runner_service import SessionRegistry

from conftest import FakeBackend, hang_handler


@pytest.fixture
async def registry():
    interpreters = []

    def interpreter_factory():
        backend = FakeBackend(hang_handler)
        interpreters.append(backend)
        return backend

    registry = SessionRegistry(
        Settings(session=SessionConfig(idle_ttl=60)),
        remote=FakeBackend(kind=BackendKind.REMOTE),
        interpreter_factory=interpreter_factory,
    )
    registry.interpreters = interpreters
    yield registry
    await registry.close_all()


async def test_idle_sessions_are_closed(registry):
    registry.get_or_create("old")
    [backend] = registry.interpreters

    closed = await registry.sweep_idle(now=time.monotonic() + 120)

    assert closed == ["old"]
    assert registry.get("old") is None
    assert backend.shutdown_called


async def test_recently_used_sessions_are_kept(registry):
    registry.get_or_create("recent")
    assert await registry.sweep_idle() == []
    assert registry.session_ids == ["recent"]


async def test_busy_sessions_are_kept_however_long_ago_they_started(registry):
    session = registry.get_or_create("busy")
    request = ExecutionRequest.single("print(1)")
    task = asyncio.create_task(session.execute(request))
    for _ in range(200):
        if session.queue.running:
            break
        await asyncio.sleep(0.01)

    assert await registry.sweep_idle(now=time.monotonic() + 3600) == []
    assert registry.get("busy") is session

    await session.cancel(request.id)
    with pytest.raises(ExecutionCanceledError):
        await task
    assert session.idle_for() < 60


async def test_sessions_with_a_running_submission_are_kept(registry):
    registry.get_or_create("grading")
    orchestrator = registry.orchestrator("grading")
    orchestrator._runs["sub-1"] = object()

    assert await registry.sweep_idle(now=time.monotonic() + 3600) == []

    del orchestrator._runs["sub-1"]
    assert await registry.sweep_idle(now=time.monotonic() + 3600) == ["grading"]
