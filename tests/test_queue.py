import asyncio
import time

import pytest

from exercise_runner.sandbox.errors import (
    BackendInitializationError,
    ExecutionCanceledError,
    ExecutionTimeoutError,
    ProjectValidationError,
    RuntimeFaultError,
)
from exercise_runner.sandbox.models import (
    DEFAULT_TIMEOUT_MS,
    BackendKind,
    ExecutionRequest,
    ExecutionState,
    ProjectFile,
)
from exercise_runner.sandbox.queue import ExecutionQueue, GlobalAdmission

from conftest import FakeBackend, hang_handler, ok_handler, sleep_handler


def make_queue(backend, **kwargs):
    return ExecutionQueue({BackendKind.IN_PROCESS: backend}, **kwargs)


def request(timeout_ms=5_000, **kwargs):
    return ExecutionRequest.single("print(1)", timeout_ms=timeout_ms, **kwargs)


async def wait_for_state(queue, request_id, state):
    for _ in range(200):
        if queue.state(request_id) is state:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"{request_id} never reached {state}")


async def test_completed_request_returns_result():
    queue = make_queue(FakeBackend())
    req = request()
    result = await queue.execute(req)
    assert result.stdout == "ok\n"
    assert queue.state(req.id) is ExecutionState.COMPLETED
    assert queue.running == 0


async def test_requests_run_fifo_one_at_a_time():
    backend = FakeBackend(sleep_handler(0.02))
    queue = make_queue(backend)
    requests = [request() for _ in range(4)]

    results = await asyncio.gather(*(queue.execute(r) for r in requests))

    assert [c.id for c in backend.calls] == [r.id for r in requests]
    assert [r.stdout for r in results] == [f"{r.id}\n" for r in requests]
    assert backend.max_active == 1


async def test_max_concurrent_slots():
    backend = FakeBackend(sleep_handler(0.05))
    queue = make_queue(backend, max_concurrent=2)
    await asyncio.gather(*(queue.execute(request()) for _ in range(5)))
    assert backend.max_active == 2


async def test_validation_happens_before_any_backend_call():
    backend = FakeBackend()
    queue = make_queue(backend)
    bad = ExecutionRequest(files=[ProjectFile("../evil.py", "")], entry_point="../evil.py")
    with pytest.raises(ProjectValidationError):
        await queue.execute(bad)
    assert backend.calls == []


async def test_unknown_backend_is_an_initialization_error():
    queue = make_queue(FakeBackend())
    with pytest.raises(BackendInitializationError):
        await queue.execute(request(backend_kind=BackendKind.REMOTE))


async def test_hard_timeout_tears_down_before_raising():
    backend = FakeBackend(hang_handler)
    queue = make_queue(backend)
    req = request(timeout_ms=100)

    started = time.monotonic()
    with pytest.raises(ExecutionTimeoutError) as info:
        await queue.execute(req)
    elapsed = time.monotonic() - started

    assert backend.torn_down == [req.id]
    assert queue.state(req.id) is ExecutionState.TIMED_OUT
    assert info.value.elapsed_ms >= 90
    assert elapsed < 2
    assert queue.running == 0


async def test_timeout_is_clamped_to_the_maximum():
    backend = FakeBackend(hang_handler)
    queue = make_queue(backend, max_timeout_ms=100)
    started = time.monotonic()
    with pytest.raises(ExecutionTimeoutError):
        await queue.execute(request(timeout_ms=60_000))
    assert time.monotonic() - started < 2


async def test_next_request_waits_for_teardown_of_timed_out_one():
    order = []

    async def handler(req, token):
        if req.timeout_ms == 100:
            async def teardown():
                await asyncio.sleep(0.05)
                order.append("teardown")
            token.add_teardown(teardown)
            await token.wait()
            token.raise_if_cancelled()
        order.append("next")
        return await sleep_handler(0)(req, token)

    queue = make_queue(FakeBackend(handler))
    slow, fast = request(timeout_ms=100), request()
    outcomes = await asyncio.gather(queue.execute(slow), queue.execute(fast), return_exceptions=True)

    assert isinstance(outcomes[0], ExecutionTimeoutError)
    assert outcomes[1].stdout == f"{fast.id}\n"
    assert order == ["teardown", "next"]


async def test_cancel_running_request():
    backend = FakeBackend(hang_handler)
    queue = make_queue(backend)
    req = request()
    task = asyncio.create_task(queue.execute(req))
    await wait_for_state(queue, req.id, ExecutionState.RUNNING)

    assert await queue.cancel(req.id) is True
    with pytest.raises(ExecutionCanceledError):
        await task
    assert backend.torn_down == [req.id]
    assert queue.state(req.id) is ExecutionState.CANCELED


async def test_cancel_queued_request_never_reaches_backend():
    backend = FakeBackend(sleep_handler(0.05))
    queue = make_queue(backend)
    first, second, third = request(), request(), request()
    tasks = [asyncio.create_task(queue.execute(r)) for r in (first, second, third)]
    await wait_for_state(queue, first.id, ExecutionState.RUNNING)
    assert queue.pending == 2

    assert await queue.cancel(second.id) is True
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert isinstance(results[1], ExecutionCanceledError)
    assert [c.id for c in backend.calls] == [first.id, third.id]
    assert queue.state(second.id) is ExecutionState.CANCELED


async def test_cancel_unknown_or_finished_request():
    queue = make_queue(FakeBackend())
    req = request()
    await queue.execute(req)
    assert await queue.cancel(req.id) is False
    assert await queue.cancel("missing") is False


async def test_backend_failure_is_failed_state():
    def broken(req, token):
        raise RuntimeFaultError("worker died", request_id=req.id)

    queue = make_queue(FakeBackend(broken))
    req = request()
    with pytest.raises(RuntimeFaultError):
        await queue.execute(req)
    assert queue.state(req.id) is ExecutionState.FAILED
    assert queue.running == 0


async def test_resize_admits_waiters():
    backend = FakeBackend(sleep_handler(0.05))
    queue = make_queue(backend)
    tasks = [asyncio.create_task(queue.execute(request())) for _ in range(3)]
    await asyncio.sleep(0.01)
    assert queue.running == 1
    queue.resize(3)
    assert queue.running == 3
    await asyncio.gather(*tasks)
    assert backend.max_active == 3


def test_invalid_limits_are_rejected():
    with pytest.raises(ValueError):
        make_queue(FakeBackend(), max_concurrent=0)
    with pytest.raises(ValueError):
        GlobalAdmission(0)


async def test_global_admission_spans_queues():
    backend = FakeBackend(sleep_handler(0.05))
    admission = GlobalAdmission(1)
    first = make_queue(backend, global_admission=admission)
    second = make_queue(backend, global_admission=admission)

    await asyncio.gather(first.execute(request()), second.execute(request()))

    assert len(backend.calls) == 2
    assert backend.max_active == 1


async def test_cancel_while_waiting_for_global_admission():
    backend = FakeBackend(sleep_handler(0.1))
    admission = GlobalAdmission(1)
    first = make_queue(backend, global_admission=admission)
    second = make_queue(backend, global_admission=admission)

    running = asyncio.create_task(first.execute(request()))
    await asyncio.sleep(0.01)
    waiting_req = request()
    waiting = asyncio.create_task(second.execute(waiting_req))
    await asyncio.sleep(0.01)

    assert await second.cancel(waiting_req.id) is True
    with pytest.raises(ExecutionCanceledError):
        await waiting
    await running
    assert len(backend.calls) == 1
    assert second.running == 0


async def test_queue_default_timeout_applies_when_the_request_has_none():
    seen = []

    def handler(req, token):
        seen.append(req.timeout_ms)
        return ok_handler(req, token)

    queue = make_queue(FakeBackend(handler), default_timeout_ms=1_234)
    await queue.execute(ExecutionRequest.single("print(1)"))
    await queue.execute(request(timeout_ms=500))
    assert seen == [1_234, 500]


def test_request_without_timeout_uses_the_module_default():
    req = ExecutionRequest.single("print(1)")
    assert req.timeout_ms is None
    assert req.timeout == DEFAULT_TIMEOUT_MS / 1000


def test_slot_limits_stack_and_restore():
    queue = make_queue(FakeBackend(), max_concurrent=1)
    with queue.slot_limit(2):
        with queue.slot_limit(4):
            assert queue.max_concurrent == 4
        assert queue.max_concurrent == 2
    assert queue.max_concurrent == 1
    with queue.slot_limit(None):
        assert queue.max_concurrent == 1
