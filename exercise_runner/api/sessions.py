"""
Execution session API routes.
"""

from fastapi import APIRouter, Depends, HTTPException

from exercise_runner.models.schemas import ErrorResponse
from exercise_runner.services.runner_service import SessionRegistry, get_registry

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("/", summary="List active sessions")
async def list_sessions(registry: SessionRegistry = Depends(get_registry)) -> dict:
    """Sessions that currently own an execution queue."""
    return {"sessions": registry.session_ids, "total": len(registry.session_ids)}


@router.delete(
    "/{session_id}",
    responses={404: {"model": ErrorResponse}},
    summary="Close a session",
    description="Cancel outstanding work and release the session's interpreter worker"
)
async def close_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry)
) -> dict:
    """Close a session."""
    if not await registry.close_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "closed", "session_id": session_id}
