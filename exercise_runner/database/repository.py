"""
Async repository for submission records.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from exercise_runner.database.models import SubmissionModel
from exercise_runner.grading.ports import PersistencePort, SubmissionFilter
from exercise_runner.models.schemas import (
    ProjectFileSchema,
    SubmissionRecord,
    SubmissionStatus,
    SubmissionSummary,
    TestOutcome,
)
from exercise_runner.sandbox.models import BackendKind

logger = get_logger()


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubmissionRepository(PersistencePort):
    """
    Persistence port backed by SQLAlchemy.

    Converts between Pydantic domain models and SQLAlchemy ORM models.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_db(record: SubmissionRecord) -> SubmissionModel:
        return SubmissionModel(
            id=record.id,
            session_id=record.session_id,
            user_id=record.user_id,
            lesson_id=record.lesson_id,
            backend_kind=record.backend_kind.value,
            status=record.status.value,
            files=[f.model_dump() for f in record.files],
            outcomes=[o.model_dump(mode="json") for o in record.outcomes],
            summary=record.summary.model_dump(),
            execution_output=record.execution_output,
            execution_time_ms=record.execution_time_ms,
            created_at=record.created_at,
            completed_at=record.completed_at,
        )

    @staticmethod
    def _from_db(row: SubmissionModel) -> SubmissionRecord:
        return SubmissionRecord(
            id=row.id,
            session_id=row.session_id,
            user_id=row.user_id,
            lesson_id=row.lesson_id,
            backend_kind=BackendKind(row.backend_kind),
            status=SubmissionStatus(row.status),
            files=[ProjectFileSchema(**f) for f in row.files or []],
            outcomes=[TestOutcome(**o) for o in row.outcomes or []],
            summary=SubmissionSummary(**(row.summary or {})),
            execution_output=row.execution_output or "",
            execution_time_ms=row.execution_time_ms or 0.0,
            created_at=_aware(row.created_at),
            completed_at=_aware(row.completed_at),
        )

    # ------------------------------------------------------------------
    # Port implementation
    # ------------------------------------------------------------------

    async def save(self, record: SubmissionRecord) -> None:
        """Insert or overwrite a submission."""
        async with self._session_factory() as db:
            async with db.begin():
                await db.merge(self._to_db(record))
        logger.debug("Submission persisted", submission_id=record.id)

    async def find(self, criteria: SubmissionFilter) -> list[SubmissionRecord]:
        """Return submissions matching *criteria*, newest first."""
        stmt = select(SubmissionModel)
        if criteria.session_id is not None:
            stmt = stmt.where(SubmissionModel.session_id == criteria.session_id)
        if criteria.user_id is not None:
            stmt = stmt.where(SubmissionModel.user_id == criteria.user_id)
        if criteria.lesson_id is not None:
            stmt = stmt.where(SubmissionModel.lesson_id == criteria.lesson_id)
        if criteria.status is not None:
            stmt = stmt.where(SubmissionModel.status == criteria.status.value)
        stmt = stmt.order_by(SubmissionModel.created_at.desc()).limit(criteria.limit)

        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [self._from_db(row) for row in rows]

    async def get(self, submission_id: str) -> SubmissionRecord | None:
        """Load a single submission."""
        async with self._session_factory() as db:
            row = await db.get(SubmissionModel, submission_id)
        return self._from_db(row) if row is not None else None
