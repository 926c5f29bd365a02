"""
Submission Orchestrator - runs a project once, then each test, and grades it.

Algorithm:
  1. Execute the project with no tests; a project that does not run at all
     short-circuits into a single "Project execution" outcome.
  2. Run every test sequentially, in declaration order, through
     harness builder -> execution session -> result parser.
  3. Aggregate the summary and derive the overall status.
  4. Hand the record to the persistence port and, on complete success only,
     report the lesson to the progress port.

Every execution-layer error is converted into a well-formed result here;
only contract violations (e.g. an empty test list) raise to the caller.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from structlog import get_logger

from exercise_runner.config import QueueConfig, SubmissionConfig
from exercise_runner.grading.harness import HarnessBuilder
from exercise_runner.grading.parser import ResultParser
from exercise_runner.grading.ports import PersistencePort, ProgressPort
from exercise_runner.models.schemas import (
    ProjectFileSchema,
    SubmissionLimits,
    SubmissionRecord,
    SubmissionResult,
    SubmissionStatus,
    SubmissionSummary,
    TestDefinition,
    TestOutcome,
    TestStatus,
)
from exercise_runner.sandbox.errors import (
    ExecutionCanceledError,
    ExecutionError,
    ExecutionTimeoutError,
)
from exercise_runner.sandbox.executor import ExecutionSession
from exercise_runner.sandbox.models import (
    BackendKind,
    ExecutionMode,
    ExecutionRequest,
    ExecutionResult,
    ProjectFile,
)

logger = get_logger()

PROJECT_OUTCOME_ID = "__project__"
PROJECT_OUTCOME_NAME = "Project execution"


class SubmissionContractError(ValueError):
    """The caller broke the orchestrator's contract."""


@dataclass
class _SubmissionRun:
    """Mutable state of one in-flight submission."""

    id: str
    canceled: bool = False
    current_request_id: str | None = None
    started: float = field(default_factory=time.monotonic)


class SubmissionOrchestrator:
    """
    Grades submissions on one execution session.

    Usage::

        orchestrator = SubmissionOrchestrator(session, persistence=store)
        result = await orchestrator.run(files, tests)
    """

    def __init__(
        self,
        session: ExecutionSession,
        persistence: PersistencePort | None = None,
        progress: ProgressPort | None = None,
        config: SubmissionConfig | None = None,
        queue_config: QueueConfig | None = None,
        harness_builder: HarnessBuilder | None = None,
        parser: ResultParser | None = None,
    ) -> None:
        self._session = session
        self._persistence = persistence
        self._progress = progress
        self._config = config or SubmissionConfig()
        self._default_timeout_ms = (queue_config or QueueConfig()).default_timeout_ms
        self._harness = harness_builder or HarnessBuilder()
        self._parser = parser or ResultParser()
        self._runs: dict[str, _SubmissionRun] = {}

    @property
    def active_submissions(self) -> list[str]:
        return list(self._runs)

    async def run(
        self,
        files: list[ProjectFile],
        tests: list[TestDefinition],
        backend_kind: BackendKind | None = None,
        limits: SubmissionLimits | None = None,
        *,
        entry_point: str = "main.py",
        submission_id: str | None = None,
        user_id: str | None = None,
        lesson_id: str | None = None,
    ) -> SubmissionResult:
        """Grade one submission. Never raises for execution failures."""
        if not tests:
            raise SubmissionContractError("A submission needs at least one test")
        submission_id = submission_id or uuid4().hex
        if submission_id in self._runs:
            raise SubmissionContractError(f"Submission {submission_id} is already running")

        limits = limits or SubmissionLimits()
        backend_kind = backend_kind or BackendKind(self._config.default_backend)
        state = _SubmissionRun(id=submission_id)
        self._runs[submission_id] = state
        log = logger.bind(
            submission_id=submission_id,
            session_id=self._session.session_id,
            backend=backend_kind.value,
        )

        created_at = datetime.now(timezone.utc)
        log.info("Submission started", tests=len(tests))
        try:
            # Shared by every submission of the session
            with self._session.queue.slot_limit(limits.max_concurrent):
                outcomes, status, output = await self._grade(
                    state, files, tests, backend_kind, limits, entry_point
                )
        finally:
            self._runs.pop(submission_id, None)

        elapsed_ms = round((time.monotonic() - state.started) * 1000, 2)
        summary = SubmissionSummary.from_outcomes(outcomes)
        record = SubmissionRecord(
            id=submission_id,
            session_id=self._session.session_id,
            user_id=user_id,
            lesson_id=lesson_id,
            backend_kind=backend_kind,
            files=[ProjectFileSchema(path=f.path, content=f.content) for f in files],
            outcomes=outcomes,
            summary=summary,
            status=status,
            execution_output=output,
            execution_time_ms=elapsed_ms,
            created_at=created_at,
            completed_at=datetime.now(timezone.utc),
        )
        log.info(
            "Submission finished",
            status=status.value,
            passed=summary.passed,
            total=summary.total,
            duration_ms=elapsed_ms,
        )

        warnings: list[str] = []
        await self._persist(record, warnings)
        if status is SubmissionStatus.SUCCESS:
            await self._report_progress(record, warnings)

        return SubmissionResult(
            success=status is SubmissionStatus.SUCCESS,
            status=status,
            test_outcomes=[outcome.public() for outcome in outcomes],
            summary=summary,
            execution_output=output,
            execution_time_ms=elapsed_ms,
            submission_id=submission_id,
            warnings=warnings,
        )

    async def cancel(self, submission_id: str) -> bool:
        """
        Cancel a running submission.

        The current execution is torn down, tests not yet started are
        discarded and completed outcomes are kept.
        """
        state = self._runs.get(submission_id)
        if state is None:
            return False
        state.canceled = True
        logger.info("Submission cancel requested", submission_id=submission_id)
        if state.current_request_id is not None:
            await self._session.cancel(state.current_request_id)
        return True

    # ------------------------------------------------------------------
    # Grading
    # ------------------------------------------------------------------

    async def _grade(
        self,
        state: _SubmissionRun,
        files: list[ProjectFile],
        tests: list[TestDefinition],
        backend_kind: BackendKind,
        limits: SubmissionLimits,
        entry_point: str,
    ) -> tuple[list[TestOutcome], SubmissionStatus, str]:
        per_execution_ms = limits.timeout_ms or self._default_timeout_ms
        aggregate_ms = limits.aggregate_timeout_ms or self._config.aggregate_timeout_ms
        deadline = state.started + aggregate_ms / 1000

        # 1. Top-level run
        request = ExecutionRequest(
            files=list(files),
            entry_point=entry_point,
            mode=ExecutionMode.SINGLE if len(files) == 1 else ExecutionMode.PROJECT,
            backend_kind=backend_kind,
            timeout_ms=min(per_execution_ms, aggregate_ms),
        )
        try:
            result = await self._execute(state, request)
        except ExecutionCanceledError:
            if state.canceled:
                return [], SubmissionStatus.CANCELED, ""
            outcome = self._project_outcome(TestStatus.ERRORED, "Execution canceled")
            return [outcome], SubmissionStatus.EXECUTION_ERROR, ""
        except ExecutionTimeoutError as exc:
            outcome = self._project_outcome(TestStatus.TIMED_OUT, exc.message, exc.elapsed_ms)
            return [outcome], SubmissionStatus.TIMEOUT, ""
        except ExecutionError as exc:
            outcome = self._project_outcome(TestStatus.ERRORED, exc.message)
            return [outcome], SubmissionStatus.EXECUTION_ERROR, ""

        output = self._combined_output(result)
        if result.error_summary is not None:
            outcome = self._project_outcome(
                TestStatus.ERRORED, result.error_summary, result.duration_ms
            )
            return [outcome], SubmissionStatus.EXECUTION_ERROR, output
        if state.canceled:
            return [], SubmissionStatus.CANCELED, output

        # 2. Tests, in declaration order
        outcomes: list[TestOutcome] = []
        aggregate_exceeded = False
        for index, test in enumerate(tests):
            if state.canceled:
                break

            remaining_ms = int((deadline - time.monotonic()) * 1000)
            if remaining_ms <= 0:
                aggregate_exceeded = True
                outcomes.extend(self._skip(tests[index:], "Submission time limit exceeded"))
                break

            requested_ms = test.timeout_ms or per_execution_ms
            timeout_ms = min(requested_ms, remaining_ms)
            outcome = await self._run_test(state, files, test, backend_kind, timeout_ms, entry_point)
            if outcome is None:
                break
            outcomes.append(outcome)

            if outcome.status is TestStatus.TIMED_OUT:
                if timeout_ms < requested_ms:
                    aggregate_exceeded = True
                    outcomes.extend(
                        self._skip(tests[index + 1:], "Submission time limit exceeded")
                    )
                    break
                if self._config.stop_on_timeout:
                    outcomes.extend(
                        self._skip(tests[index + 1:], "Skipped after an earlier test timed out")
                    )
                    break

        # 3. Status
        if state.canceled:
            status = SubmissionStatus.CANCELED
        elif aggregate_exceeded:
            status = SubmissionStatus.TIMEOUT
        elif all(o.status is TestStatus.PASSED for o in outcomes):
            status = SubmissionStatus.SUCCESS
        else:
            status = SubmissionStatus.PARTIAL
        return outcomes, status, output

    async def _run_test(
        self,
        state: _SubmissionRun,
        files: list[ProjectFile],
        test: TestDefinition,
        backend_kind: BackendKind,
        timeout_ms: int,
        entry_point: str,
    ) -> TestOutcome | None:
        """Run one test; None means the submission was canceled meanwhile."""
        try:
            built = self._harness.build(
                files,
                test,
                entry_point=entry_point,
                backend_kind=backend_kind,
                timeout_ms=timeout_ms,
            )
            result = await self._execute(state, built.request)
        except ExecutionCanceledError as exc:
            if state.canceled:
                return None
            return self._parser.parse(test, error=exc)
        except ExecutionError as exc:
            return self._parser.parse(test, error=exc)

        outcome = self._parser.parse(test, result, nonce=built.nonce)
        logger.debug(
            "Test finished",
            submission_id=state.id,
            test_id=test.id,
            status=outcome.status.value,
            duration_ms=outcome.duration_ms,
        )
        return outcome

    async def _execute(self, state: _SubmissionRun, request: ExecutionRequest) -> ExecutionResult:
        state.current_request_id = request.id
        try:
            return await self._session.execute(request)
        finally:
            state.current_request_id = None

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def _persist(self, record: SubmissionRecord, warnings: list[str]) -> None:
        if self._persistence is None:
            return
        attempts = 1 + self._config.persistence_retries
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await self._persistence.save(record)
                return
            except Exception as exc:
                logger.warning(
                    "Failed to persist submission",
                    submission_id=record.id,
                    attempt=attempt,
                    error=str(exc),
                )
                last_error = exc
        warnings.append(f"Submission could not be saved: {last_error}")

    async def _report_progress(self, record: SubmissionRecord, warnings: list[str]) -> None:
        if self._progress is None or not record.user_id or not record.lesson_id:
            return
        try:
            await self._progress.mark_lesson_complete(record.user_id, record.lesson_id)
        except Exception as exc:
            logger.warning(
                "Failed to record lesson progress",
                submission_id=record.id,
                user_id=record.user_id,
                lesson_id=record.lesson_id,
                error=str(exc),
            )
            warnings.append(f"Lesson progress could not be recorded: {exc}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _project_outcome(status: TestStatus, message: str, duration_ms: float = 0.0) -> TestOutcome:
        return TestOutcome(
            id=PROJECT_OUTCOME_ID,
            name=PROJECT_OUTCOME_NAME,
            status=status,
            message=message,
            duration_ms=round(duration_ms, 2),
        )

    @staticmethod
    def _skip(tests: list[TestDefinition], message: str) -> list[TestOutcome]:
        return [
            TestOutcome(
                id=test.id,
                name=test.name,
                status=TestStatus.TIMED_OUT,
                message=message,
                hidden=test.hidden,
            )
            for test in tests
        ]

    @staticmethod
    def _combined_output(result: ExecutionResult) -> str:
        if result.stderr:
            return f"{result.stdout}{result.stderr}"
        return result.stdout
