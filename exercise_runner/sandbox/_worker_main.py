"""
Interpreter worker entry point.

Launched as ``python -I -u _worker_main.py <scratch_root> <max_output> [limits]``
by ``InterpreterWorker``.  Runs in its own isolated interpreter and only
uses the standard library, so it never depends on the parent's environment.

Protocol: one JSON object per line on the original stdin/stdout file
descriptors.  Those descriptors are duplicated at startup and fd 0/1 are
pointed at /dev/null, so user code can neither read commands nor forge
replies.  Every execution gets its own stdout/stderr buffers.

Confinement, installed before the first command is read:
  - resource limits from the optional JSON ``limits`` argument
  - an audit hook that denies process creation, sockets and native code
    loading, and restricts file access to the scratch root plus read-only
    access to the interpreter's own library directories
"""

import contextlib
import importlib
import io
import json
import os
import runpy
import shutil
import signal
import sys
import time
import traceback
from pathlib import Path

TRUNCATION_NOTICE = "\n… [output truncated]\n"

_DENIED_EVENTS = frozenset({
    "os.system",
    "os.exec",
    "os.posix_spawn",
    "os.spawn",
    "os.fork",
    "os.forkpty",
    "os.kill",
    "os.killpg",
    "subprocess.Popen",
    "pty.spawn",
    "socket.bind",
    "socket.connect",
    "socket.sendto",
    "ctypes.dlopen",
    "os.symlink",
    "os.link",
})

# Filesystem mutations checked against the scratch root (event -> path argument positions)
_MUTATING_EVENTS = {
    "os.mkdir": (0,),
    "os.remove": (0,),
    "os.rmdir": (0,),
    "os.rename": (0, 1),
    "os.truncate": (0,),
    "os.chmod": (0,),
    "os.chown": (0,),
    "os.utime": (0,),
    "shutil.rmtree": (0,),
}

_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC


def cap_output(text, limit):
    """Keep the head and the last whole lines of *text* within *limit* characters."""
    if len(text) <= limit:
        return text, False
    tail_size = limit // 4
    tail = text[len(text) - tail_size:] if tail_size else ""
    newline = tail.find("\n")
    if newline != -1:
        tail = tail[newline + 1:]
    return text[: limit - tail_size] + TRUNCATION_NOTICE + tail, True


def _open_channels():
    proto_in = os.fdopen(os.dup(0), "rb")
    proto_out = os.fdopen(os.dup(1), "wb")
    devnull = os.open(os.devnull, os.O_RDWR)
    os.dup2(devnull, 0)
    os.dup2(devnull, 1)
    os.close(devnull)
    return proto_in, proto_out


class CpuLimitExceeded(BaseException):
    pass


class _Capture(io.StringIO):
    # User code closing sys.stdout must not discard what was captured
    def close(self):
        pass


class Guard:
    """Audit hook confining file access to the scratch root."""

    def __init__(self, root):
        self.root = root
        self.unlocked = False
        readable = {sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix}
        readable.update(entry for entry in sys.path if entry)
        self.readable = tuple(sorted(os.path.abspath(p) for p in readable))

    def install(self):
        sys.addaudithook(self)

    @contextlib.contextmanager
    def adjusting_limits(self):
        self.unlocked = True
        try:
            yield
        finally:
            self.unlocked = False

    def __call__(self, event, args):
        if event in _DENIED_EVENTS:
            raise PermissionError(f"Operation not permitted in the sandbox: {event}")
        if event == "open":
            path, mode, flags = (tuple(args) + (None, None))[:3]
            self.check_path(path, self.is_write(mode, flags))
        elif event in ("os.listdir", "os.scandir"):
            self.check_path(args[0] if args else None, False)
        elif event in _MUTATING_EVENTS:
            for index in _MUTATING_EVENTS[event]:
                self.check_path(args[index], True)
        elif event in ("resource.setrlimit", "resource.prlimit") and not self.unlocked:
            raise PermissionError("Resource limits cannot be changed in the sandbox")

    @staticmethod
    def is_write(mode, flags):
        if isinstance(mode, str) and any(c in mode for c in "wax+"):
            return True
        return isinstance(flags, int) and bool(flags & _WRITE_FLAGS)

    def check_path(self, path, write):
        if isinstance(path, int):
            return
        if path is None:
            path = "."
        target = os.path.abspath(os.fsdecode(os.fspath(path)))
        if self.within(target, (self.root,)):
            return
        if not write and self.within(target, self.readable):
            return
        raise PermissionError(f"Access outside the sandbox is not permitted: {target}")

    @staticmethod
    def within(target, roots):
        for root in roots:
            if target == root or target.startswith(root.rstrip(os.sep) + os.sep):
                return True
        return False


class Worker:
    def __init__(self, root, max_output, limits=None):
        self.root = Path(root).resolve()
        self.max_output = max_output
        self.limits = limits or {}
        self.root.mkdir(parents=True, exist_ok=True)
        self.guard = Guard(str(self.root))
        os.chdir(self.root)

    def apply_limits(self):
        if os.name != "posix":
            return
        import resource

        def lower(kind, value):
            _, hard = resource.getrlimit(kind)
            if hard != resource.RLIM_INFINITY:
                value = min(value, hard)
            resource.setrlimit(kind, (value, value))

        memory_mb = self.limits.get("memory_mb")
        if memory_mb:
            lower(resource.RLIMIT_AS, memory_mb * 1024 * 1024)
        file_size_mb = self.limits.get("file_size_mb")
        if file_size_mb:
            # Oversized writes fail with EFBIG instead of killing the worker
            signal.signal(signal.SIGXFSZ, signal.SIG_IGN)
            lower(resource.RLIMIT_FSIZE, file_size_mb * 1024 * 1024)
        processes = self.limits.get("processes")
        if processes is not None:
            lower(resource.RLIMIT_NPROC, processes)
        if self.limits.get("cpu_seconds"):
            signal.signal(signal.SIGXCPU, self._cpu_exceeded)

    def _cpu_exceeded(self, signum, frame):
        raise CpuLimitExceeded(f"CPU time limit of {self.limits['cpu_seconds']}s exceeded")

    @contextlib.contextmanager
    def cpu_budget(self):
        seconds = self.limits.get("cpu_seconds")
        if not seconds or os.name != "posix":
            yield
            return
        import resource

        usage = resource.getrusage(resource.RUSAGE_SELF)
        soft, hard = resource.getrlimit(resource.RLIMIT_CPU)
        allowed = int(usage.ru_utime + usage.ru_stime) + seconds + 1
        if hard != resource.RLIM_INFINITY:
            allowed = min(allowed, hard)
        with self.guard.adjusting_limits():
            resource.setrlimit(resource.RLIMIT_CPU, (allowed, hard))
        try:
            yield
        finally:
            with self.guard.adjusting_limits():
                resource.setrlimit(resource.RLIMIT_CPU, (soft, hard))

    def resolve(self, relative):
        target = (self.root / relative).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"path escapes the worker filesystem: {relative}")
        return target

    def op_ping(self, msg):
        return {"pid": os.getpid()}

    def op_write(self, msg):
        target = self.resolve(msg["path"])
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(msg["content"], encoding="utf-8")
        return {}

    def op_remove(self, msg):
        target = self.resolve(msg["path"])
        if target == self.root:
            raise ValueError("refusing to remove the worker root")
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()
        return {}

    def op_run(self, msg):
        run_dir = self.resolve(msg["cwd"])
        entry = self.resolve(os.path.join(msg["cwd"], msg["entry"]))
        stdout, stderr = _Capture(), _Capture()
        modules_before = set(sys.modules)
        path_before = list(sys.path)
        error = None

        sys.path.insert(0, str(run_dir))
        os.chdir(run_dir)
        sys.stdin = io.StringIO("")
        started = time.perf_counter()
        try:
            with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
                try:
                    with self.cpu_budget():
                        runpy.run_path(str(entry), run_name="__main__")
                except SystemExit as exc:
                    if exc.code not in (None, 0):
                        error = f"SystemExit: {exc.code}"
                except BaseException as exc:  # user code may raise anything
                    traceback.print_exc()
                    lines = traceback.format_exception_only(type(exc), exc)
                    error = lines[-1].strip() if lines else type(exc).__name__
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            os.chdir(self.root)
            sys.path[:] = path_before
            sys.path_importer_cache.pop(str(run_dir), None)
            sys.stdin = sys.__stdin__
            for name in set(sys.modules) - modules_before:
                del sys.modules[name]
            importlib.invalidate_caches()

        out, out_cut = cap_output(stdout.getvalue(), self.max_output)
        err, err_cut = cap_output(stderr.getvalue(), self.max_output)
        return {
            "stdout": out,
            "stderr": err,
            "error": error,
            "duration_ms": duration_ms,
            "truncated": out_cut or err_cut,
        }


def main(argv):
    proto_in, proto_out = _open_channels()
    # The script's own directory must not be importable by user code
    if sys.path and os.path.abspath(sys.path[0]) == os.path.dirname(os.path.abspath(__file__)):
        del sys.path[0]
    sys.dont_write_bytecode = True

    limits = json.loads(argv[3]) if len(argv) > 3 else {}
    worker = Worker(argv[1], int(argv[2]), limits)
    os.environ["TMPDIR"] = str(worker.root)
    worker.apply_limits()
    worker.guard.install()

    def send(payload):
        # Lone surrogates printed by user code must not break the reply
        line = json.dumps(payload, ensure_ascii=False).encode("utf-8", "replace")
        proto_out.write(line + b"\n")
        proto_out.flush()

    send({"event": "ready", "pid": os.getpid(), "python": sys.version.split()[0]})

    for raw in proto_in:
        try:
            msg = json.loads(raw)
        except ValueError as exc:
            send({"id": None, "ok": False, "error": f"bad message: {exc}"})
            continue
        handler = getattr(worker, "op_" + str(msg.get("op")), None)
        if handler is None:
            send({"id": msg.get("id"), "ok": False, "error": f"unknown op {msg.get('op')!r}"})
            continue
        try:
            reply = handler(msg)
        except Exception as exc:
            send({"id": msg.get("id"), "ok": False, "error": f"{type(exc).__name__}: {exc}"})
            continue
        reply.update(id=msg.get("id"), ok=True)
        send(reply)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
