import pytest

from exercise_runner.sandbox.errors import ProjectValidationError
from exercise_runner.sandbox.models import ProjectFile
from exercise_runner.sandbox.security import (
    MAX_FILES,
    normalize_path,
    validate_project_files,
)


@pytest.mark.parametrize(
    "path",
    [
        "",
        "   ",
        "/etc/passwd.py",
        "C:/code/main.py",
        "c:main.py",
        "..",
        "../main.py",
        "pkg/../../main.py",
        "pkg/..",
        "pkg\\main.py",
        "pkg//main.py",
        "./main.py",
        "pkg/",
        "main.exe",
        "main",
        "script.sh",
        "a\x00.py",
    ],
)
def test_unsafe_paths_are_rejected(path):
    with pytest.raises(ProjectValidationError):
        normalize_path(path)


@pytest.mark.parametrize(
    "path",
    ["main.py", "pkg/util.py", "data/input.csv", "README.md", "conf/settings.toml", "a/b/c/d.json"],
)
def test_safe_paths_are_accepted(path):
    assert normalize_path(path) == path


def test_extension_check_ignores_case():
    assert normalize_path("NOTES.MD") == "NOTES.MD"


def test_overlong_path_is_rejected():
    with pytest.raises(ProjectValidationError):
        normalize_path("a" * 300 + ".py")


def test_validate_project_returns_normalised_copy():
    files = [ProjectFile("main.py", "print(1)"), ProjectFile("pkg/util.py", "X = 1")]
    validated = validate_project_files(files, "main.py")
    assert validated == files
    assert validated is not files


def test_duplicate_paths_are_rejected():
    files = [ProjectFile("main.py", "a"), ProjectFile("main.py", "b")]
    with pytest.raises(ProjectValidationError, match="Duplicate"):
        validate_project_files(files)


def test_parent_segment_anywhere_in_project_is_rejected():
    files = [ProjectFile("main.py", ""), ProjectFile("../escape.py", "")]
    with pytest.raises(ProjectValidationError, match="Parent-directory"):
        validate_project_files(files, "main.py")


def test_empty_project_is_rejected():
    with pytest.raises(ProjectValidationError):
        validate_project_files([])


def test_too_many_files_are_rejected():
    files = [ProjectFile(f"m{i}.py", "") for i in range(MAX_FILES + 1)]
    with pytest.raises(ProjectValidationError, match="Too many"):
        validate_project_files(files)


def test_missing_entry_point_is_rejected():
    with pytest.raises(ProjectValidationError, match="not found"):
        validate_project_files([ProjectFile("util.py", "")], "main.py")


def test_entry_point_must_be_python():
    files = [ProjectFile("main.py", ""), ProjectFile("data.txt", "")]
    with pytest.raises(ProjectValidationError, match="Python file"):
        validate_project_files(files, "data.txt")


def test_validation_error_carries_code():
    with pytest.raises(ProjectValidationError) as info:
        normalize_path("/abs.py")
    assert info.value.code == "VALIDATION_ERROR"
