"""
SQLAlchemy ORM models for submissions and lesson progress.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


class SubmissionModel(Base):
    """A graded submission."""

    __tablename__ = "submissions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lesson_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    backend_kind: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32))

    files: Mapped[list] = mapped_column(JsonColumn, default=list)
    outcomes: Mapped[list] = mapped_column(JsonColumn, default=list)
    summary: Mapped[dict] = mapped_column(JsonColumn, default=dict)

    execution_output: Mapped[str] = mapped_column(Text, default="")
    execution_time_ms: Mapped[float] = mapped_column(Float, default=0.0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_submissions_user_lesson", "user_id", "lesson_id"),
    )

    def __repr__(self) -> str:
        return f"<Submission {self.id} status={self.status}>"


class LessonProgressModel(Base):
    """A lesson a user has completed."""

    __tablename__ = "lesson_progress"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lesson_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<LessonProgress user={self.user_id} lesson={self.lesson_id}>"
