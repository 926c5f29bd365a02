"""
Client side of the isolated interpreter worker.

The worker is a long-lived child interpreter started in isolated mode
(``-I``) with a private scratch directory as its virtual filesystem.
Commands and replies are JSON lines encoded with ``orjson``.  Resource
limits travel on the command line and the worker applies them itself
before it accepts commands.
"""

from __future__ import annotations

import asyncio
import itertools
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any

import orjson
from structlog import get_logger

from exercise_runner.sandbox.errors import BackendInitializationError, RuntimeFaultError

logger = get_logger()

WORKER_SCRIPT = Path(__file__).resolve().with_name("_worker_main.py")

# Replies carry captured output on a single line
_STREAM_LIMIT = 32 * 1024 * 1024


class InterpreterWorker:
    """Handle to one worker process and its scratch filesystem."""

    def __init__(
        self,
        python_executable: str,
        max_output_size: int = 100_000,
        init_timeout: float = 20.0,
        scratch_dir: str | None = None,
        limits: dict[str, int] | None = None,
    ) -> None:
        self._python = python_executable
        self._max_output_size = max_output_size
        self._init_timeout = init_timeout
        self._scratch_dir = scratch_dir
        self._limits = {k: v for k, v in (limits or {}).items() if v is not None}
        self._process: asyncio.subprocess.Process | None = None
        self._root: Path | None = None
        self._io_lock = asyncio.Lock()
        self._ids = itertools.count(1)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> float:
        """Spawn the worker and wait for its ready event. Returns load time in ms."""
        started = time.monotonic()
        self._root = Path(tempfile.mkdtemp(prefix="exercise-runner-", dir=self._scratch_dir))
        try:
            self._process = await asyncio.create_subprocess_exec(
                self._python,
                "-I",
                "-u",
                str(WORKER_SCRIPT),
                str(self._root),
                str(self._max_output_size),
                orjson.dumps(self._limits).decode(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            await self.terminate()
            raise BackendInitializationError(f"Cannot start interpreter worker: {exc}") from exc

        try:
            async with asyncio.timeout(self._init_timeout):
                hello = await self._read()
        except TimeoutError as exc:
            await self.terminate()
            raise BackendInitializationError(
                f"Interpreter worker did not become ready within {self._init_timeout}s"
            ) from exc
        except RuntimeFaultError as exc:
            await self.terminate()
            raise BackendInitializationError(str(exc)) from exc

        if hello.get("event") != "ready":
            await self.terminate()
            raise BackendInitializationError(f"Unexpected worker handshake: {hello!r}")

        load_time_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Interpreter worker ready",
            pid=self.pid,
            python=hello.get("python"),
            load_time_ms=round(load_time_ms, 2),
        )
        return load_time_ms

    async def terminate(self) -> None:
        """Kill the worker and delete its scratch filesystem."""
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            logger.info("Interpreter worker terminated", pid=process.pid)
        root, self._root = self._root, None
        if root is not None:
            await asyncio.to_thread(shutil.rmtree, root, True)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def ping(self) -> dict[str, Any]:
        return await self.request("ping")

    async def write_file(self, path: str, content: str) -> None:
        await self.request("write", path=path, content=content)

    async def remove(self, path: str) -> None:
        await self.request("remove", path=path)

    async def run(self, cwd: str, entry: str) -> dict[str, Any]:
        return await self.request("run", cwd=cwd, entry=entry)

    async def request(self, op: str, **payload: Any) -> dict[str, Any]:
        """Send one command and wait for its reply."""
        async with self._io_lock:
            if not self.alive:
                raise RuntimeFaultError("Interpreter worker is not running")
            assert self._process is not None and self._process.stdin is not None
            message_id = next(self._ids)
            line = orjson.dumps({"id": message_id, "op": op, **payload}) + b"\n"
            try:
                self._process.stdin.write(line)
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise RuntimeFaultError(f"Interpreter worker went away: {exc}") from exc

            reply = await self._read()

        if reply.get("id") != message_id:
            raise RuntimeFaultError(f"Out-of-order worker reply for {op!r}")
        if not reply.get("ok"):
            raise RuntimeFaultError(reply.get("error") or f"Worker command {op!r} failed")
        return reply

    async def _read(self) -> dict[str, Any]:
        if self._process is None or self._process.stdout is None:
            raise RuntimeFaultError("Interpreter worker is not running")
        try:
            raw = await self._process.stdout.readline()
        except (ValueError, asyncio.LimitOverrunError) as exc:
            raise RuntimeFaultError(f"Oversized worker reply: {exc}") from exc
        if not raw:
            raise RuntimeFaultError("Interpreter worker exited unexpectedly")
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise RuntimeFaultError(f"Malformed worker reply: {exc}") from exc
