"""
Submission grading API routes.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from structlog import get_logger

from exercise_runner.config import get_settings
from exercise_runner.grading.orchestrator import SubmissionContractError
from exercise_runner.grading.ports import SubmissionFilter
from exercise_runner.models.schemas import (
    CancelResponse,
    ErrorResponse,
    SubmissionListResponse,
    SubmissionRequest,
    SubmissionResult,
    SubmissionStatus,
)
from exercise_runner.sandbox.models import BackendKind
from exercise_runner.services.runner_service import SessionRegistry, get_registry

logger = get_logger()
router = APIRouter(tags=["submissions"])


@router.post(
    "/sessions/{session_id}/submissions",
    response_model=SubmissionResult,
    responses={422: {"model": ErrorResponse}},
    summary="Grade a submission",
    description="Run the project once, then every test in order, and grade the result"
)
async def create_submission(
    session_id: str,
    body: SubmissionRequest,
    registry: SessionRegistry = Depends(get_registry)
) -> SubmissionResult:
    """
    Grade a submission on the session's execution backends.

    Execution problems (syntax errors, timeouts, an unavailable sandbox)
    are reported inside the result; only malformed requests are rejected.
    """
    orchestrator = registry.orchestrator(session_id)
    backend = body.backend or BackendKind(get_settings().submission.default_backend)
    try:
        return await orchestrator.run(
            [f.to_project_file() for f in body.files],
            body.tests,
            backend,
            body.limits,
            entry_point=body.entry_point,
            submission_id=body.submission_id,
            user_id=body.user_id,
            lesson_id=body.lesson_id,
        )
    except SubmissionContractError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post(
    "/sessions/{session_id}/submissions/{submission_id}/cancel",
    response_model=CancelResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Cancel a submission"
)
async def cancel_submission(
    session_id: str,
    submission_id: str,
    registry: SessionRegistry = Depends(get_registry)
) -> CancelResponse:
    """Cancel a running submission; finished tests are kept."""
    orchestrator = registry.existing_orchestrator(session_id)
    if orchestrator is None or not await orchestrator.cancel(submission_id):
        raise HTTPException(status_code=404, detail="Submission not running")
    return CancelResponse(id=submission_id, canceled=True)


@router.get(
    "/submissions",
    response_model=SubmissionListResponse,
    summary="List stored submissions"
)
async def list_submissions(
    session_id: str | None = None,
    user_id: str | None = None,
    lesson_id: str | None = None,
    status: SubmissionStatus | None = None,
    limit: Annotated[int, Query(ge=1, le=200, description="Max records")] = 50,
    registry: SessionRegistry = Depends(get_registry)
) -> SubmissionListResponse:
    """Stored submissions, newest first."""
    records = await registry.persistence.find(
        SubmissionFilter(
            session_id=session_id,
            user_id=user_id,
            lesson_id=lesson_id,
            status=status,
            limit=limit,
        )
    )
    return SubmissionListResponse(submissions=records, total=len(records))
