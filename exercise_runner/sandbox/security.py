"""
Path validation for virtual project files.

Every backend writes user files into some filesystem (the interpreter
worker's scratch directory, a container's workspace).  Validation runs
before any write and is independent of the backend:
  1. Reject absolute paths, drive letters and parent-directory segments
  2. Reject duplicate paths after normalisation
  3. Restrict file types to an approved extension set
  4. Require the entry point to be one of the project's Python files

``CodeChecker`` is a lightweight AST pass for backends without an OS-level
boundary of their own: it blocks imports of modules that enable escapes or
resource exhaustion and logs suspicious calls.
"""

from __future__ import annotations

import ast
import posixpath
import re
from collections.abc import Iterable

from structlog import get_logger

from exercise_runner.sandbox.errors import ProjectValidationError
from exercise_runner.sandbox.models import ProjectFile

logger = get_logger()

ALLOWED_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".py",
        ".txt",
        ".json",
        ".csv",
        ".md",
        ".cfg",
        ".ini",
        ".toml",
        ".yaml",
        ".yml",
    }
)

MAX_PATH_LENGTH = 255
MAX_FILES = 64

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def normalize_path(path: str) -> str:
    """Return the canonical relative POSIX form of *path* or raise."""
    if not path or not path.strip():
        raise ProjectValidationError("File path must not be empty")
    if len(path) > MAX_PATH_LENGTH:
        raise ProjectValidationError(f"File path too long: {path[:40]}…")
    if "\x00" in path:
        raise ProjectValidationError(f"File path contains a NUL byte: {path!r}")
    if "\\" in path:
        raise ProjectValidationError(f"Backslashes are not allowed in paths: {path}")
    if path.startswith("/") or _DRIVE_RE.match(path):
        raise ProjectValidationError(f"Absolute paths are not allowed: {path}")

    segments = path.split("/")
    for segment in segments:
        if segment == "..":
            raise ProjectValidationError(f"Parent-directory segments are not allowed: {path}")
        if segment in ("", "."):
            raise ProjectValidationError(f"Empty path segment in: {path}")

    _, ext = posixpath.splitext(segments[-1])
    if ext.lower() not in ALLOWED_EXTENSIONS:
        raise ProjectValidationError(
            f"File type not allowed: {path} (allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))})"
        )
    return "/".join(segments)


def validate_project_files(
    files: Iterable[ProjectFile],
    entry_point: str | None = None,
) -> list[ProjectFile]:
    """
    Validate a whole project and return it with normalised paths.

    Raises ``ProjectValidationError`` on the first violation.  The input is
    never mutated.
    """
    validated: list[ProjectFile] = []
    seen: set[str] = set()

    for file in files:
        path = normalize_path(file.path)
        if path in seen:
            raise ProjectValidationError(f"Duplicate file path: {path}")
        seen.add(path)
        validated.append(ProjectFile(path=path, content=file.content))

    if not validated:
        raise ProjectValidationError("Project must contain at least one file")
    if len(validated) > MAX_FILES:
        raise ProjectValidationError(f"Too many files ({len(validated)} > {MAX_FILES})")

    if entry_point is not None:
        entry = normalize_path(entry_point)
        if not entry.endswith(".py"):
            raise ProjectValidationError(f"Entry point must be a Python file: {entry}")
        if entry not in seen:
            raise ProjectValidationError(f"Entry point {entry} not found in files")

    return validated


# Modules that can cause resource exhaustion or escape the worker
BLOCKED_MODULES: frozenset[str] = frozenset(
    {
        "ctypes",
        "multiprocessing",
        "signal",
        "_thread",
    }
)

# Patterns to warn about (logged, not blocked; the worker's audit hook decides)
WARN_CALL_PATTERNS: frozenset[str] = frozenset(
    {
        "os.system",
        "os.popen",
        "os.exec",
        "os.execv",
        "os.execve",
        "os.fork",
        "subprocess.call",
        "subprocess.run",
        "subprocess.Popen",
        "shutil.rmtree",
        "__import__",
        "eval",
        "exec",
    }
)


class CodeChecker:
    """
    AST pre-check of a project's Python files.

    Files that do not parse are left alone: the syntax error is reported by
    the run itself, like any other user error.
    """

    def __init__(self, blocked_modules: Iterable[str] | None = None) -> None:
        self.blocked_modules = (
            frozenset(blocked_modules) if blocked_modules is not None else BLOCKED_MODULES
        )

    def check_project(self, files: Iterable[ProjectFile], request_id: str | None = None) -> list[str]:
        """Raise ``ProjectValidationError`` on a blocked import; return warnings."""
        warnings: list[str] = []
        for file in files:
            if file.path.endswith(".py"):
                warnings.extend(self.check(file.content, file.path, request_id))
        if warnings:
            logger.debug("Suspicious calls in submitted code", request_id=request_id, warnings=warnings)
        return warnings

    def check(self, code: str, path: str = "<string>", request_id: str | None = None) -> list[str]:
        try:
            tree = ast.parse(code, filename=path)
        except SyntaxError:
            return []

        warnings: list[str] = []
        for node in ast.walk(tree):
            blocked = self._blocked_import(node)
            if blocked is not None:
                raise ProjectValidationError(
                    f"Blocked module: {blocked} ({path}:{node.lineno})", request_id=request_id
                )
            if isinstance(node, ast.Call):
                name = self._resolve_call_name(node)
                if name in WARN_CALL_PATTERNS:
                    warnings.append(f"Potentially dangerous call: {name} ({path}:{node.lineno})")
        return warnings

    def _blocked_import(self, node: ast.AST) -> str | None:
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.name.split(".")[0] in self.blocked_modules:
                    return alias.name
        elif isinstance(node, ast.ImportFrom) and node.module and node.level == 0:
            if node.module.split(".")[0] in self.blocked_modules:
                return node.module
        return None

    @staticmethod
    def _resolve_call_name(node: ast.Call) -> str:
        """Best-effort dotted name of a call."""
        if isinstance(node.func, ast.Name):
            return node.func.id

        parts: list[str] = []
        current: ast.expr = node.func
        while isinstance(current, ast.Attribute):
            parts.append(current.attr)
            current = current.value
        if isinstance(current, ast.Name):
            parts.append(current.id)

        return ".".join(reversed(parts))
