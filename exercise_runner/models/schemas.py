"""
Data models and schemas for grading and the HTTP API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from exercise_runner.sandbox.models import BackendKind, ProjectFile


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TestStatus(str, Enum):
    """Verdict of a single test."""
    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"


class SubmissionStatus(str, Enum):
    """Overall status of a submission."""
    SUCCESS = "success"
    PARTIAL = "partial"
    EXECUTION_ERROR = "execution_error"
    TIMEOUT = "timeout"
    CANCELED = "canceled"


class ProjectFileSchema(BaseModel):
    """A file of the submitted project."""

    path: str = Field(description="Relative POSIX path")
    content: str = Field(default="", description="File contents")

    def to_project_file(self) -> ProjectFile:
        return ProjectFile(path=self.path, content=self.content)


class TestDefinition(BaseModel):
    """One test run against the submitted project."""
    __test__ = False

    id: str = Field(default_factory=lambda: uuid4().hex, description="Test ID")
    name: str = Field(description="Display name")
    code: str = Field(description="Test body; assertions signal failure")
    timeout_ms: int | None = Field(default=None, gt=0, description="Per-test ceiling")
    hidden: bool = Field(default=False, description="Hide the failure message from the user")


class TestOutcome(BaseModel):
    """Classified result of one test."""
    __test__ = False

    id: str = Field(description="Test ID")
    name: str = Field(description="Display name")
    status: TestStatus = Field(description="Verdict")
    message: str | None = Field(default=None, description="Failure or error detail")
    duration_ms: float = Field(default=0.0, description="Backend-measured wall time")
    hidden: bool = Field(default=False)

    def public(self) -> "TestOutcome":
        """Copy safe to show to the submitter."""
        if self.hidden and self.message is not None:
            return self.model_copy(update={"message": None})
        return self


class SubmissionSummary(BaseModel):
    """Aggregate counts. ``failed`` covers every outcome that did not pass."""

    total: int = Field(default=0, ge=0)
    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    score: int = Field(default=0, ge=0, le=100)
    errored: int = Field(default=0, ge=0, description="Part of failed")
    timed_out: int = Field(default=0, ge=0, description="Part of failed")

    @classmethod
    def from_outcomes(cls, outcomes: list[TestOutcome]) -> "SubmissionSummary":
        total = len(outcomes)
        passed = sum(1 for o in outcomes if o.status is TestStatus.PASSED)
        return cls(
            total=total,
            passed=passed,
            failed=total - passed,
            score=round(passed / total * 100) if total else 0,
            errored=sum(1 for o in outcomes if o.status is TestStatus.ERRORED),
            timed_out=sum(1 for o in outcomes if o.status is TestStatus.TIMED_OUT),
        )


class SubmissionLimits(BaseModel):
    """Per-run limits supplied by the caller."""

    timeout_ms: int | None = Field(default=None, gt=0, description="Per-execution ceiling")
    max_concurrent: int | None = Field(default=None, ge=1, description="Session admission slots")
    aggregate_timeout_ms: int | None = Field(
        default=None, gt=0, description="Ceiling across the whole submission"
    )


class SubmissionRecord(BaseModel):
    """Everything persisted about one finished submission."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    session_id: str | None = Field(default=None)
    user_id: str | None = Field(default=None)
    lesson_id: str | None = Field(default=None)
    backend_kind: BackendKind = Field(default=BackendKind.IN_PROCESS)
    files: list[ProjectFileSchema] = Field(default_factory=list)
    outcomes: list[TestOutcome] = Field(default_factory=list)
    summary: SubmissionSummary = Field(default_factory=SubmissionSummary)
    status: SubmissionStatus = Field(default=SubmissionStatus.PARTIAL)
    execution_output: str = Field(default="")
    execution_time_ms: float = Field(default=0.0)
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = Field(default=None)


class SubmissionResult(BaseModel):
    """Presentation shape returned for every submission."""

    success: bool = Field(description="True only when every test passed")
    status: SubmissionStatus = Field(description="Overall status")
    test_outcomes: list[TestOutcome] = Field(default_factory=list)
    summary: SubmissionSummary = Field(default_factory=SubmissionSummary)
    execution_output: str = Field(default="", description="Output of the top-level run")
    execution_time_ms: float = Field(default=0.0)
    submission_id: str = Field(description="Submission ID")
    warnings: list[str] = Field(default_factory=list, description="Non-fatal problems")


# API Request/Response Models

class SubmissionRequest(BaseModel):
    """Submission API request."""

    files: list[ProjectFileSchema] = Field(description="Project files")
    tests: list[TestDefinition] = Field(description="Tests to run, in order")
    entry_point: str = Field(default="main.py")
    backend: BackendKind | None = Field(default=None, description="Defaults to the configured backend")
    limits: SubmissionLimits = Field(default_factory=SubmissionLimits)
    submission_id: str | None = Field(default=None, description="Client-chosen ID (for cancel)")
    user_id: str | None = Field(default=None)
    lesson_id: str | None = Field(default=None)

    @field_validator("files")
    @classmethod
    def validate_files(cls, v: list[ProjectFileSchema]) -> list[ProjectFileSchema]:
        if not v:
            raise ValueError("At least one file is required")
        return v


class ExecutionRunRequest(BaseModel):
    """Single-script or project execution request."""

    code: str | None = Field(default=None, description="Single-script source")
    files: list[ProjectFileSchema] | None = Field(default=None, description="Project files")
    entry_point: str = Field(default="main.py")
    backend: BackendKind = Field(default=BackendKind.IN_PROCESS)
    timeout_ms: int | None = Field(default=None, gt=0)
    request_id: str | None = Field(default=None, description="Client-chosen ID (for cancel)")

    @model_validator(mode="after")
    def check_source(self) -> "ExecutionRunRequest":
        if (self.code is None) == (self.files is None):
            raise ValueError("Provide exactly one of 'code' or 'files'")
        return self


class ExecutionRunResponse(BaseModel):
    """Captured output of one execution."""

    request_id: str
    stdout: str
    stderr: str
    error_summary: str | None = None
    duration_ms: float
    truncated: bool = False
    metadata: dict[str, Any] | None = None


class CancelResponse(BaseModel):
    """Cancellation acknowledgement."""

    id: str
    canceled: bool


class SubmissionListResponse(BaseModel):
    """Stored submissions matching a filter."""

    submissions: list[SubmissionRecord]
    total: int


class ErrorResponse(BaseModel):
    """Error response."""

    error: str = Field(description="Error message")
    code: str = Field(description="Error code")
    details: dict[str, Any] | None = Field(default=None)
