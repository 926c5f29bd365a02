"""
Test harness builder.

Wraps a project plus one test definition into an executable request.  The
generated entry point imports the user's modules, runs the test body and
prints exactly one verdict line:

    @@EXERCISE-RUNNER@@ <nonce> PASS|FAIL|ERROR <json payload>

The nonce is fresh per harness.  It only exists as an argument of the
harness function, and the harness file deletes itself before any user
module is imported, so user code cannot read it from module globals or
from disk.  The output stream and every helper the verdict needs are bound
up front, so rebinding ``sys.stdout`` or builtins does not silence the
verdict either.  Code that walks interpreter frames can still reach it;
the parser's FAIL > ERROR > PASS priority keeps such a forgery from hiding
a genuine failure.
"""

from __future__ import annotations

import posixpath
import secrets
import textwrap
from dataclasses import dataclass

from exercise_runner.models.schemas import TestDefinition
from exercise_runner.sandbox.errors import ProjectValidationError
from exercise_runner.sandbox.models import (
    BackendKind,
    ExecutionMode,
    ExecutionRequest,
    ProjectFile,
)
from exercise_runner.sandbox.security import normalize_path, validate_project_files

MARKER = "@@EXERCISE-RUNNER@@"
HARNESS_FILENAME = "__exercise_harness__.py"

_HARNESS_TEMPLATE = '''\
import sys


def _exercise_harness(marker, nonce, modules, root_modules, test_source):
    import importlib
    import json
    import os
    import traceback

    # Everything the verdict depends on is bound before user code runs
    write = sys.stdout.write
    flush = sys.stdout.flush
    flush_err = sys.stderr.flush
    dumps = json.dumps
    import_module = importlib.import_module
    format_exc = traceback.format_exc
    format_exception_only = traceback.format_exception_only
    run = exec
    build = compile
    assertion_error = AssertionError
    base_exception = BaseException
    os.remove(os.path.abspath(__file__))

    def emit(verdict, payload):
        flush_err()
        write("\\n%s %s %s %s\\n" % (marker, nonce, verdict, dumps(payload)))
        flush()

    def describe(exc):
        return "".join(format_exception_only(type(exc), exc)).strip()

    namespace = {{"__name__": "__exercise_test__", "__builtins__": __builtins__}}
    current = None
    try:
        for current in modules:
            module = import_module(current)
            if "." not in current:
                namespace[current] = module
            if current in root_modules:
                exported = getattr(module, "__all__", None)
                if exported is None:
                    exported = [name for name in vars(module) if not name.startswith("_")]
                for name in exported:
                    namespace[name] = getattr(module, name)
    except base_exception as exc:
        emit("ERROR", {{
            "message": "Could not load module %r: %s" % (current, describe(exc)),
            "traceback": format_exc(),
            "phase": "import",
        }})
        return

    try:
        run(build(test_source, "<test>", "exec"), namespace)
    except assertion_error as exc:
        emit("FAIL", {{"message": str(exc) or "Assertion failed"}})
    except base_exception as exc:
        emit("ERROR", {{
            "message": describe(exc),
            "traceback": format_exc(),
            "phase": "test",
        }})
    else:
        emit("PASS", {{}})


_exercise_harness({marker!r}, {nonce!r}, {modules!r}, {root_modules!r}, {test_source!r})
'''


@dataclass(frozen=True)
class BuiltHarness:
    """An executable harness and the nonce its verdict line carries."""

    request: ExecutionRequest
    nonce: str
    test_id: str


def module_name(path: str) -> str | None:
    """Dotted import name of a project file, or None if it cannot be imported."""
    if not path.endswith(".py"):
        return None
    parts = path[: -len(".py")].split("/")
    if parts[-1] == "__init__":
        parts = parts[:-1]
    if not parts or parts[-1] == "__main__":
        return None
    if not all(part.isidentifier() for part in parts):
        return None
    return ".".join(parts)


class HarnessBuilder:
    """Synthesizes per-test harness requests."""

    def __init__(self, nonce_bytes: int = 8) -> None:
        self._nonce_bytes = nonce_bytes

    def build(
        self,
        files: list[ProjectFile],
        test: TestDefinition,
        entry_point: str = "main.py",
        backend_kind: BackendKind = BackendKind.IN_PROCESS,
        timeout_ms: int = 10_000,
        session_id: str | None = None,
    ) -> BuiltHarness:
        """Return a request whose entry point is the generated harness."""
        project = validate_project_files(files, entry_point)
        if any(f.path == HARNESS_FILENAME for f in project):
            raise ProjectValidationError(f"{HARNESS_FILENAME} is a reserved file name")

        entry = normalize_path(entry_point)
        modules: list[str] = []
        root_modules: list[str] = []
        # Entry point first, then the rest in declaration order
        for path in [entry] + [f.path for f in project if f.path != entry]:
            name = module_name(path)
            if name is None or name in modules:
                continue
            modules.append(name)
            if posixpath.dirname(path) == "":
                root_modules.append(name)

        nonce = secrets.token_hex(self._nonce_bytes)
        source = _HARNESS_TEMPLATE.format(
            marker=MARKER,
            nonce=nonce,
            modules=modules,
            root_modules=root_modules,
            test_source=textwrap.dedent(test.code),
        )
        request = ExecutionRequest(
            files=[*project, ProjectFile(path=HARNESS_FILENAME, content=source)],
            entry_point=HARNESS_FILENAME,
            mode=ExecutionMode.PROJECT,
            backend_kind=backend_kind,
            timeout_ms=timeout_ms,
            session_id=session_id,
        )
        return BuiltHarness(request=request, nonce=nonce, test_id=test.id)
