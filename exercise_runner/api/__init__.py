"""API module."""

from .executions import router as executions_router
from .sessions import router as sessions_router
from .submissions import router as submissions_router

__all__ = ["executions_router", "sessions_router", "submissions_router"]
