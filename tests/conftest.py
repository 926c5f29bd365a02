import ast
import asyncio
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Must be set before the settings are first read
_DB_DIR = tempfile.mkdtemp(prefix="exercise-runner-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/test.db")

import pytest  # noqa: E402

from exercise_runner.config import Settings  # noqa: E402
from exercise_runner.grading.harness import HARNESS_FILENAME, MARKER  # noqa: E402
from exercise_runner.sandbox.backend import ExecutionBackend  # noqa: E402
from exercise_runner.sandbox.cancellation import CancellationToken  # noqa: E402
from exercise_runner.sandbox.executor import ExecutionSession  # noqa: E402
from exercise_runner.sandbox.models import (  # noqa: E402
    BackendKind,
    ExecutionRequest,
    ExecutionResult,
    ProjectFile,
)


class FakeBackend(ExecutionBackend):
    """Scriptable backend that records calls and teardowns."""

    def __init__(self, handler=None, kind=BackendKind.IN_PROCESS):
        self._kind = kind
        self.handler = handler or ok_handler
        self.calls: list[ExecutionRequest] = []
        self.torn_down: list[str] = []
        self.active = 0
        self.max_active = 0
        self.shutdown_called = False

    @property
    def kind(self):
        return self._kind

    async def execute(self, request, token=None):
        token = token or CancellationToken(request.id)
        self.calls.append(request)

        async def teardown():
            self.torn_down.append(request.id)

        token.add_teardown(teardown)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            result = self.handler(request, token)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            self.active -= 1
            token.remove_teardown(teardown)

    async def cancel(self, request_id):
        pass

    async def shutdown(self):
        self.shutdown_called = True


def ok_handler(request, token):
    return ExecutionResult(stdout="ok\n", duration_ms=1.0)


async def hang_handler(request, token):
    await token.wait()
    token.raise_if_cancelled()


def sleep_handler(seconds):
    async def handler(request, token):
        await asyncio.sleep(seconds)
        return ExecutionResult(stdout=f"{request.id}\n", duration_ms=seconds * 1000)
    return handler


def harness_parts(request):
    """Return (nonce, test source) of a harness request."""
    source = next(f.content for f in request.files if f.path == HARNESS_FILENAME)
    call = ast.parse(source).body[-1].value
    marker, nonce, modules, root_modules, test_source = (
        ast.literal_eval(arg) for arg in call.args
    )
    return nonce, test_source


def verdict_line(nonce, verdict, payload=None):
    return f"{MARKER} {nonce} {verdict} {json.dumps(payload or {})}"


async def grading_handler(request, token):
    """
    Pretends to run harnesses: the test body decides the verdict.

    HANG blocks until torn down, FAIL fails, BOOM errors, anything else passes.
    """
    if request.entry_point != HARNESS_FILENAME:
        return ExecutionResult(stdout="top-level\n", duration_ms=2.0)
    nonce, source = harness_parts(request)
    if "HANG" in source:
        await token.wait()
        token.raise_if_cancelled()
    if "FAIL" in source:
        line = verdict_line(nonce, "FAIL", {"message": "expected failure"})
    elif "BOOM" in source:
        line = verdict_line(nonce, "ERROR", {"message": "RuntimeError: boom"})
    else:
        line = verdict_line(nonce, "PASS")
    return ExecutionResult(stdout=f"user output\n{line}\n", duration_ms=3.0)


def project(**files):
    """project(main="...") -> [ProjectFile("main.py", "...")]"""
    return [ProjectFile(path=f"{name}.py", content=content) for name, content in files.items()]


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
async def fake_session(settings):
    backend = FakeBackend(grading_handler)
    remote = FakeBackend(grading_handler, kind=BackendKind.REMOTE)
    session = ExecutionSession(
        "fake-session", settings=settings, interpreter=backend, remote=remote
    )
    yield session, backend
    await session.close()


@pytest.fixture
async def worker_session(settings):
    session = ExecutionSession(
        "worker-session",
        settings=settings,
        remote=FakeBackend(kind=BackendKind.REMOTE),
    )
    yield session
    await session.close()
