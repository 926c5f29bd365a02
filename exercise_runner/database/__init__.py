"""Database module: async SQLAlchemy persistence adapters."""

from .engine import init_db, close_db, get_session_factory
from .models import Base, LessonProgressModel, SubmissionModel
from .progress_repository import ProgressRepository
from .repository import SubmissionRepository

__all__ = [
    "init_db",
    "close_db",
    "get_session_factory",
    "Base",
    "LessonProgressModel",
    "SubmissionModel",
    "ProgressRepository",
    "SubmissionRepository",
]
