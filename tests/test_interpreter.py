import asyncio
import sys

import pytest

from exercise_runner.config import InterpreterConfig
from exercise_runner.sandbox.errors import (
    BackendInitializationError,
    ExecutionCanceledError,
    ExecutionTimeoutError,
    ProjectValidationError,
)
from exercise_runner.sandbox.interpreter import InProcessExecutor, InterpreterState
from exercise_runner.sandbox.models import (
    ExecutionRequest,
    ExecutionState,
    InterpreterMetadata,
    ProjectFile,
)
from exercise_runner.sandbox._worker_main import TRUNCATION_NOTICE
from exercise_runner.sandbox.worker import InterpreterWorker


@pytest.fixture
async def executor():
    executor = InProcessExecutor(InterpreterConfig())
    yield executor
    await executor.shutdown()


async def test_runs_a_single_script(executor):
    result = await executor.execute(ExecutionRequest.single("print('hello')"))
    assert result.stdout == "hello\n"
    assert result.stderr == ""
    assert result.error_summary is None
    assert isinstance(result.metadata, InterpreterMetadata)
    assert result.metadata.cold_start is True
    assert result.metadata.load_time_ms > 0
    assert executor.state is InterpreterState.READY


async def test_worker_is_reused_between_runs(executor):
    first = await executor.execute(ExecutionRequest.single("print(1)"))
    second = await executor.execute(ExecutionRequest.single("print(2)"))
    assert second.metadata.cold_start is False
    assert first.metadata.worker_pid == second.metadata.worker_pid


async def test_user_exception_is_a_result_not_an_error(executor):
    code = "print('before')\nraise ValueError('bad input')\n"
    result = await executor.execute(ExecutionRequest.single(code))
    assert result.stdout == "before\n"
    assert result.error_summary == "ValueError: bad input"
    assert "Traceback" in result.stderr


async def test_syntax_error_is_reported(executor):
    result = await executor.execute(ExecutionRequest.single("def broken(:\n"))
    assert result.error_summary.startswith("SyntaxError")


async def test_output_does_not_leak_between_runs(executor):
    await executor.execute(ExecutionRequest.single("import sys\nprint('a')\nprint('e', file=sys.stderr)"))
    result = await executor.execute(ExecutionRequest.single("print('b')"))
    assert result.stdout == "b\n"
    assert result.stderr == ""


async def test_project_files_are_removed_after_each_run(executor):
    files = [
        ProjectFile("main.py", "import helper\nhelper.greet()\n"),
        ProjectFile("helper.py", "def greet():\n    print('hi from helper')\n"),
    ]
    first = await executor.execute(ExecutionRequest(files=files))
    assert first.stdout == "hi from helper\n"

    listing = "import os\nprint(sorted(os.listdir('..')))\nimport helper\n"
    second = await executor.execute(ExecutionRequest.single(listing))
    assert second.error_summary.startswith("ModuleNotFoundError")
    assert second.stdout.count("run-") == 1


async def test_multi_file_project_with_packages_and_data(executor):
    files = [
        ProjectFile("app/main.py", "from lib.text import shout\nprint(shout(open('data/in.txt').read()))\n"),
        ProjectFile("lib/__init__.py", ""),
        ProjectFile("lib/text.py", "def shout(s):\n    return s.strip().upper()\n"),
        ProjectFile("data/in.txt", "quiet\n"),
    ]
    # The entry point's directory is not the working directory
    request = ExecutionRequest(files=files, entry_point="app/main.py")
    result = await executor.execute(request)
    assert result.error_summary is None, result.stderr
    assert result.stdout == "QUIET\n"


async def test_system_exit_codes(executor):
    ok = await executor.execute(ExecutionRequest.single("import sys\nsys.exit(0)"))
    assert ok.error_summary is None
    failed = await executor.execute(ExecutionRequest.single("import sys\nsys.exit(2)"))
    assert failed.error_summary == "SystemExit: 2"


async def test_stdin_is_empty(executor):
    result = await executor.execute(ExecutionRequest.single("input()"))
    assert result.error_summary.startswith("EOFError")


async def test_output_is_truncated():
    executor = InProcessExecutor(InterpreterConfig(max_output_size=10))
    try:
        result = await executor.execute(ExecutionRequest.single("print('x' * 100)"))
    finally:
        await executor.shutdown()
    assert result.truncated is True
    assert result.stdout == "x" * 8 + TRUNCATION_NOTICE


async def test_truncation_keeps_the_last_lines():
    executor = InProcessExecutor(InterpreterConfig(max_output_size=100))
    try:
        code = "print('start')\nprint('x' * 1000)\nprint('end')\n"
        result = await executor.execute(ExecutionRequest.single(code))
    finally:
        await executor.shutdown()
    assert result.truncated is True
    assert result.stdout.startswith("start\n")
    assert result.stdout.endswith(TRUNCATION_NOTICE + "end\n")


async def test_validation_happens_before_the_worker_starts(executor):
    bad = ExecutionRequest(files=[ProjectFile("/etc/evil.py", "")], entry_point="/etc/evil.py")
    with pytest.raises(ProjectValidationError):
        await executor.execute(bad)
    assert executor.state is InterpreterState.UNINITIALIZED
    assert executor.worker_pid is None


async def test_concurrent_callers_share_one_initialization():
    created = []

    def factory():
        worker = InterpreterWorker(sys.executable)
        created.append(worker)
        return worker

    executor = InProcessExecutor(InterpreterConfig(), worker_factory=factory)
    try:
        await asyncio.gather(*(executor.initialize() for _ in range(5)))
        results = await asyncio.gather(
            *(executor.execute(ExecutionRequest.single(f"print({i})")) for i in range(3))
        )
    finally:
        await executor.shutdown()

    assert len(created) == 1
    assert [r.stdout for r in results] == ["0\n", "1\n", "2\n"]


async def test_initialization_failure_returns_to_uninitialized():
    executor = InProcessExecutor(InterpreterConfig(python_executable="/nonexistent/python3"))
    with pytest.raises(BackendInitializationError):
        await executor.execute(ExecutionRequest.single("print(1)"))
    assert executor.state is InterpreterState.UNINITIALIZED
    with pytest.raises(BackendInitializationError):
        await executor.initialize()


async def test_timeout_resets_the_worker(worker_session):
    warm = await worker_session.execute(ExecutionRequest.single("print('warm')"))
    old_pid = warm.metadata.worker_pid

    hang = ExecutionRequest.single("while True:\n    pass\n", timeout_ms=500)
    with pytest.raises(ExecutionTimeoutError):
        await worker_session.execute(hang)
    assert worker_session.queue.state(hang.id) is ExecutionState.TIMED_OUT
    assert worker_session.interpreter.state is InterpreterState.UNINITIALIZED

    after = await worker_session.execute(ExecutionRequest.single("print('alive')"))
    assert after.stdout == "alive\n"
    assert after.metadata.cold_start is True
    assert after.metadata.worker_pid != old_pid


async def test_cancel_running_execution(worker_session):
    hang = ExecutionRequest.single("import time\ntime.sleep(30)\n", timeout_ms=20_000)
    task = asyncio.create_task(worker_session.execute(hang))
    for _ in range(400):
        if worker_session.queue.state(hang.id) is ExecutionState.RUNNING:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.2)

    assert await worker_session.cancel(hang.id) is True
    with pytest.raises(ExecutionCanceledError):
        await task

    result = await worker_session.execute(ExecutionRequest.single("print('next')"))
    assert result.stdout == "next\n"


async def test_lone_surrogate_in_output_is_a_normal_result(executor):
    result = await executor.execute(ExecutionRequest.single("print('a\\ud800b')"))
    assert result.error_summary is None
    assert result.stdout == "a?b\n"
    assert (await executor.execute(ExecutionRequest.single("print('ok')"))).stdout == "ok\n"


async def test_closing_stdout_keeps_captured_output(executor):
    result = await executor.execute(ExecutionRequest.single("import sys\nprint('kept')\nsys.stdout.close()\n"))
    assert result.error_summary is None
    assert result.stdout == "kept\n"


async def test_files_outside_the_scratch_root_are_not_readable(executor):
    result = await executor.execute(ExecutionRequest.single("print(open('/etc/passwd').read())"))
    assert result.error_summary.startswith("PermissionError")
    assert result.stdout == ""


async def test_writes_outside_the_scratch_root_are_denied(executor):
    code = "import sys\nopen(sys.prefix + '/exercise-runner-escape.txt', 'w')\n"
    result = await executor.execute(ExecutionRequest.single(code))
    assert result.error_summary.startswith("PermissionError")


async def test_stdlib_imports_and_local_files_still_work(executor):
    code = (
        "import json, collections, tempfile\n"
        "with open('notes.txt', 'w') as fh:\n"
        "    fh.write(json.dumps({'a': 1}))\n"
        "with tempfile.NamedTemporaryFile('w') as tmp:\n"
        "    tmp.write('scratch')\n"
        "print(open('notes.txt').read())\n"
    )
    result = await executor.execute(ExecutionRequest.single(code))
    assert result.error_summary is None, result.stderr
    assert result.stdout == '{"a": 1}\n'


async def test_process_creation_is_denied(executor):
    result = await executor.execute(ExecutionRequest.single("import os\nos.system('echo hi')\n"))
    assert result.error_summary.startswith("PermissionError")


async def test_resource_limits_cannot_be_raised(executor):
    code = "import resource\nresource.setrlimit(resource.RLIMIT_CPU, (-1, -1))\n"
    result = await executor.execute(ExecutionRequest.single(code))
    assert result.error_summary.startswith("PermissionError")


async def test_blocked_module_is_rejected_before_running(executor):
    with pytest.raises(ProjectValidationError, match="Blocked module: ctypes"):
        await executor.execute(ExecutionRequest.single("import ctypes\n"))
    assert executor.state is InterpreterState.UNINITIALIZED


async def test_memory_limit_raises_memory_error():
    executor = InProcessExecutor(InterpreterConfig(memory_limit_mb=256))
    try:
        result = await executor.execute(ExecutionRequest.single("x = bytearray(1024 * 1024 * 1024)\n"))
    finally:
        await executor.shutdown()
    assert result.error_summary.startswith("MemoryError")


async def test_cpu_limit_stops_a_busy_loop():
    executor = InProcessExecutor(InterpreterConfig(cpu_limit_seconds=1))
    try:
        result = await executor.execute(
            ExecutionRequest.single("while True:\n    pass\n", timeout_ms=20_000)
        )
        after = await executor.execute(ExecutionRequest.single("print('still here')"))
    finally:
        await executor.shutdown()
    assert result.error_summary.startswith("CpuLimitExceeded")
    assert after.stdout == "still here\n"
