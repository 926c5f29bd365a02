"""
Remote sandbox executor backed by a Docker daemon.

Lifecycle per execution:
  1. Provision an ephemeral container (one retry on transient failures)
  2. Upload the project files via tar archive (no volume mounts)
  3. Start the container; the entry point runs under ``timeout -s KILL``
  4. Capture stdout / stderr
  5. Force-remove the container on every exit path

All Docker SDK calls are synchronous and wrapped with ``asyncio.to_thread``
to keep the event loop responsive.  The daemon may live on another host
(``DOCKER_HOST``); nothing here assumes it is local.
"""

from __future__ import annotations

import asyncio
import io
import math
import posixpath
import tarfile
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from structlog import get_logger

from exercise_runner.config import SandboxConfig
from exercise_runner.sandbox._worker_main import cap_output
from exercise_runner.sandbox.backend import ExecutionBackend
from exercise_runner.sandbox.cancellation import CancellationToken, CancelReason
from exercise_runner.sandbox.errors import (
    ExecutionTimeoutError,
    SandboxTransportError,
    SandboxUnavailableError,
)
from exercise_runner.sandbox.models import (
    BackendKind,
    ExecutionRequest,
    ExecutionResult,
    ProjectFile,
    SandboxMetadata,
)
from exercise_runner.sandbox.security import normalize_path, validate_project_files

logger = get_logger()

# Exit codes of coreutils ``timeout`` (TERM / KILL)
_TIMEOUT_EXIT_CODES = frozenset({124, 137})

ClientFactory = Callable[[], Any]


class SandboxLease:
    """
    A sandbox container that must be released exactly once.

    The lease exists before the container does, so a teardown that fires
    while provisioning is still in flight marks it released; a container
    delivered after that is refused by ``attach`` and discarded.
    """

    def __init__(self) -> None:
        self.container: Any | None = None
        self._released = False

    @property
    def sandbox_id(self) -> str | None:
        if self.container is None:
            return None
        return getattr(self.container, "short_id", None) or str(self.container.id)

    @property
    def released(self) -> bool:
        return self._released

    def attach(self, container: Any) -> bool:
        """Adopt a freshly created container. False if the lease was already released."""
        if self._released:
            return False
        self.container = container
        return True

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self.container is None:
            return
        await _safe_kill(self.container)
        await _safe_remove(self.container)
        logger.debug("Sandbox released", sandbox_id=self.sandbox_id)


class RemoteSandboxExecutor(ExecutionBackend):
    """
    Runs each request in a throw-away container.

    The executor itself is long-lived and holds no per-request state beyond
    the active tokens, so several requests may run concurrently.
    """

    def __init__(
        self,
        config: SandboxConfig | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._config = config or SandboxConfig()
        self._client_factory = client_factory or docker.from_env
        self._client: Any | None = None
        self._init_lock = asyncio.Lock()
        self._active: dict[str, CancellationToken] = {}
        self._discards: set[asyncio.Future] = set()

    @property
    def kind(self) -> BackendKind:
        return BackendKind.REMOTE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Connect to the Docker daemon and make sure the image exists."""
        async with self._init_lock:
            if self._client is not None:
                return
            try:
                client = await asyncio.to_thread(self._client_factory)
                await asyncio.to_thread(client.ping)
            except (DockerException, OSError) as exc:
                logger.error("Cannot connect to sandbox service", error=str(exc))
                raise SandboxUnavailableError(
                    "Sandbox service is not available", transient=True
                ) from exc
            logger.info("Sandbox service connected")

            if self._config.auto_pull_image:
                await self._ensure_image(client)
            self._client = client

    async def shutdown(self) -> None:
        """Release running sandboxes and the client."""
        for token in list(self._active.values()):
            await token.cancel(CancelReason.CANCELED)
        if self._discards:
            await asyncio.wait(set(self._discards))
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
            logger.info("Remote sandbox executor shut down")

    async def _ensure_image(self, client: Any) -> None:
        image = self._config.image_name
        try:
            await asyncio.to_thread(client.images.get, image)
            logger.info("Sandbox image found", image=image)
        except ImageNotFound:
            logger.info("Sandbox image not found, pulling", image=image)
            try:
                await asyncio.to_thread(client.images.pull, image)
            except DockerException as exc:
                raise SandboxUnavailableError(f"Cannot pull sandbox image {image}: {exc}") from exc
            logger.info("Sandbox image pulled", image=image)

    # ------------------------------------------------------------------
    # Code execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        request: ExecutionRequest,
        token: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run the request inside a fresh container."""
        token = token or CancellationToken(request.id)
        files = validate_project_files(request.files, request.entry_point)
        entry = normalize_path(request.entry_point)

        await self.initialize()
        token.raise_if_cancelled()

        self._active[request.id] = token
        start_time = time.monotonic()
        try:
            async with self._lease(request, entry, token) as (lease, attempts):
                container = lease.container
                try:
                    await asyncio.to_thread(self._upload, container, files)
                    await asyncio.to_thread(container.start)
                    exit_code = await self._wait(lease, request)
                    stdout_raw: bytes = await asyncio.to_thread(
                        container.logs, stdout=True, stderr=False
                    )
                    stderr_raw: bytes = await asyncio.to_thread(
                        container.logs, stdout=False, stderr=True
                    )
                except (DockerException, OSError) as exc:
                    token.raise_if_cancelled()
                    logger.error(
                        "Sandbox transport failure",
                        request_id=request.id,
                        sandbox_id=lease.sandbox_id,
                        error=str(exc),
                    )
                    raise SandboxTransportError(
                        f"Sandbox failed during execution: {exc}", request_id=request.id
                    ) from exc

                token.raise_if_cancelled()
                elapsed = time.monotonic() - start_time
                if exit_code in _TIMEOUT_EXIT_CODES and elapsed >= request.timeout:
                    raise ExecutionTimeoutError(
                        f"Execution timed out after {request.timeout:g}s",
                        request_id=request.id,
                        elapsed_ms=elapsed * 1000,
                    )

                stdout_str, stderr_str, truncated = self._process_output(stdout_raw, stderr_raw)
                sandbox_id = lease.sandbox_id
        finally:
            self._active.pop(request.id, None)

        duration_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "Sandbox execution finished",
            request_id=request.id,
            sandbox_id=sandbox_id,
            exit_code=exit_code,
            duration_ms=round(duration_ms, 2),
        )
        return ExecutionResult(
            stdout=stdout_str,
            stderr=stderr_str,
            error_summary=self._error_summary(exit_code, stderr_str),
            duration_ms=duration_ms,
            truncated=truncated,
            metadata=SandboxMetadata(
                sandbox_id=sandbox_id,
                image=self._config.image_name,
                exit_code=exit_code,
                provision_attempts=attempts,
            ),
        )

    async def cancel(self, request_id: str) -> None:
        """Tear down the sandbox of a running request."""
        token = self._active.get(request_id)
        if token is not None:
            await token.cancel(CancelReason.CANCELED)

    @asynccontextmanager
    async def _lease(
        self,
        request: ExecutionRequest,
        entry: str,
        token: CancellationToken,
    ) -> AsyncIterator[tuple[SandboxLease, int]]:
        """Provision a sandbox and guarantee its release."""
        lease = SandboxLease()
        # Registered before provisioning: the token may fire mid-create
        token.add_teardown(lease.release)
        try:
            attempts = await self._provision(request, entry, lease)
            token.raise_if_cancelled()
            yield lease, attempts
        finally:
            token.remove_teardown(lease.release)
            await lease.release()

    async def _provision(self, request: ExecutionRequest, entry: str, lease: SandboxLease) -> int:
        attempt = 0
        while True:
            attempt += 1
            create = asyncio.ensure_future(
                asyncio.to_thread(self._create_container, request, entry)
            )
            # The create call cannot be interrupted; whoever is left owns the result
            create.add_done_callback(partial(self._adopt, lease, request.id))
            try:
                await asyncio.shield(create)
            except ImageNotFound as exc:
                raise SandboxUnavailableError(
                    f"Sandbox image {self._config.image_name} is missing",
                    request_id=request.id,
                ) from exc
            except (DockerException, OSError) as exc:
                transient = self._is_transient(exc)
                if transient and attempt == 1:
                    logger.warning(
                        "Sandbox provisioning failed, retrying once",
                        request_id=request.id,
                        error=str(exc),
                    )
                    await asyncio.sleep(self._config.provision_retry_delay)
                    continue
                raise SandboxUnavailableError(
                    f"Sandbox service unavailable: {exc}",
                    request_id=request.id,
                    transient=transient,
                ) from exc
            logger.debug(
                "Sandbox provisioned",
                request_id=request.id,
                sandbox_id=lease.sandbox_id,
                attempts=attempt,
            )
            return attempt

    def _adopt(self, lease: SandboxLease, request_id: str, create: asyncio.Future) -> None:
        if create.cancelled() or create.exception() is not None:
            return
        container = create.result()
        if lease.attach(container):
            return
        logger.warning("Sandbox arrived after its execution ended, discarding", request_id=request_id)
        task = asyncio.ensure_future(self._discard(container))
        self._discards.add(task)
        task.add_done_callback(self._discards.discard)

    @staticmethod
    async def _discard(container: Any) -> None:
        await _safe_kill(container)
        await _safe_remove(container)

    async def _wait(self, lease: SandboxLease, request: ExecutionRequest) -> int:
        """Wait for the container; the daemon-side timeout normally fires first."""
        local_limit = request.timeout + self._config.teardown_grace + 5.0
        try:
            exit_info = await asyncio.wait_for(
                asyncio.to_thread(lease.container.wait),
                timeout=local_limit,
            )
        except TimeoutError as exc:
            await lease.release()
            raise ExecutionTimeoutError(
                f"Execution timed out after {request.timeout:g}s",
                request_id=request.id,
                elapsed_ms=local_limit * 1000,
            ) from exc
        return int(exit_info.get("StatusCode", -1))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _create_container(self, request: ExecutionRequest, entry: str) -> Any:
        """Create (but don't start) the sandbox container."""
        assert self._client is not None
        seconds = max(1, math.ceil(request.timeout))
        return self._client.containers.create(
            image=self._config.image_name,
            command=["timeout", "-s", "KILL", f"{seconds}s", "python", "-u", entry],
            working_dir=self._config.container_workdir,
            detach=True,
            labels={"exercise-runner.request": request.id},
            # Resource limits
            mem_limit=self._config.memory_limit,
            cpu_period=self._config.cpu_period,
            cpu_quota=self._config.cpu_quota,
            pids_limit=self._config.pids_limit,
            # Network isolation
            network_disabled=not self._config.network_enabled,
            # Security hardening
            security_opt=["no-new-privileges"],
        )

    def _upload(self, container: Any, files: list[ProjectFile]) -> None:
        """Copy the project into the container workdir via a tar archive."""
        workdir = self._config.container_workdir.strip("/")
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            dirs: set[str] = {workdir}
            for file in files:
                parent = posixpath.dirname(file.path)
                while parent:
                    dirs.add(posixpath.join(workdir, parent))
                    parent = posixpath.dirname(parent)
            for name in sorted(dirs):
                info = tarfile.TarInfo(name=name)
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            for file in files:
                data = file.content.encode("utf-8")
                info = tarfile.TarInfo(name=posixpath.join(workdir, file.path))
                info.size = len(data)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
        buf.seek(0)
        container.put_archive("/", buf.getvalue())

    def _process_output(
        self, stdout_raw: bytes, stderr_raw: bytes
    ) -> tuple[str, str, bool]:
        """Decode and optionally truncate captured output."""
        max_size = self._config.max_output_size
        stdout_str = stdout_raw.decode("utf-8", errors="replace")
        stderr_str = stderr_raw.decode("utf-8", errors="replace")

        # Keeps the tail too: verdict lines are printed last
        stdout_str, stdout_cut = cap_output(stdout_str, max_size)
        stderr_str, stderr_cut = cap_output(stderr_str, max_size)
        return stdout_str, stderr_str, stdout_cut or stderr_cut

    @staticmethod
    def _error_summary(exit_code: int, stderr: str) -> str | None:
        if exit_code == 0:
            return None
        for line in reversed(stderr.splitlines()):
            if line.strip():
                return line.strip()
        return f"Process exited with code {exit_code}"

    @staticmethod
    def _is_transient(exc: Exception) -> bool:
        if isinstance(exc, APIError):
            return exc.is_server_error()
        return True


async def _safe_kill(container: Any) -> None:
    try:
        await asyncio.to_thread(container.kill)
    except NotFound:
        pass
    except (DockerException, OSError) as exc:
        logger.debug("Sandbox kill skipped", error=str(exc))


async def _safe_remove(container: Any) -> None:
    try:
        await asyncio.to_thread(container.remove, force=True)
    except NotFound:
        pass
    except (DockerException, OSError) as exc:
        logger.warning("Sandbox removal failed", error=str(exc))
