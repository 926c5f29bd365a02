"""
Code execution API routes.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from structlog import get_logger

from exercise_runner.models.schemas import (
    CancelResponse,
    ErrorResponse,
    ExecutionRunRequest,
    ExecutionRunResponse,
)
from exercise_runner.sandbox.models import ExecutionMode, ExecutionRequest
from exercise_runner.services.runner_service import SessionRegistry, get_registry

logger = get_logger()
router = APIRouter(prefix="/sessions", tags=["executions"])


@router.post(
    "/{session_id}/executions",
    response_model=ExecutionRunResponse,
    responses={
        408: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    summary="Run code",
    description="Run a single script or a multi-file project and return its output"
)
async def run_code(
    session_id: str,
    body: ExecutionRunRequest,
    registry: SessionRegistry = Depends(get_registry)
) -> ExecutionRunResponse:
    """Run code through the session's queue."""
    timeout_ms = body.timeout_ms
    if body.code is not None:
        request = ExecutionRequest.single(body.code, body.backend, timeout_ms)
    else:
        request = ExecutionRequest(
            files=[f.to_project_file() for f in body.files or []],
            entry_point=body.entry_point,
            mode=ExecutionMode.PROJECT,
            backend_kind=body.backend,
            timeout_ms=timeout_ms,
        )
    if body.request_id:
        request.id = body.request_id

    result = await registry.get_or_create(session_id).execute(request)
    return ExecutionRunResponse(
        request_id=request.id,
        stdout=result.stdout,
        stderr=result.stderr,
        error_summary=result.error_summary,
        duration_ms=round(result.duration_ms, 2),
        truncated=result.truncated,
        metadata=asdict(result.metadata) if result.metadata else None,
    )


@router.get(
    "/{session_id}/executions/{request_id}",
    responses={404: {"model": ErrorResponse}},
    summary="Get execution state"
)
async def get_execution_state(
    session_id: str,
    request_id: str,
    registry: SessionRegistry = Depends(get_registry)
) -> dict:
    """Current or last known state of an execution."""
    session = registry.get(session_id)
    state = session.queue.state(request_id) if session else None
    if state is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return {"request_id": request_id, "state": state.value}


@router.delete(
    "/{session_id}/executions/{request_id}",
    response_model=CancelResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Cancel an execution"
)
async def cancel_execution(
    session_id: str,
    request_id: str,
    registry: SessionRegistry = Depends(get_registry)
) -> CancelResponse:
    """Cancel a queued or running execution."""
    session = registry.get(session_id)
    if session is None or not await session.cancel(request_id):
        raise HTTPException(status_code=404, detail="Execution not active")
    return CancelResponse(id=request_id, canceled=True)
