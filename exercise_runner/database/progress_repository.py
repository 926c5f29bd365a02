"""
Async repository for lesson progress.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from exercise_runner.database.models import LessonProgressModel
from exercise_runner.grading.ports import ProgressPort

logger = get_logger()


class ProgressRepository(ProgressPort):
    """Progress port backed by SQLAlchemy; marking a lesson twice is a no-op."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def mark_lesson_complete(self, user_id: str, lesson_id: str) -> None:
        async with self._session_factory() as db:
            existing = await db.get(LessonProgressModel, (user_id, lesson_id))
            if existing is not None:
                return
            db.add(LessonProgressModel(user_id=user_id, lesson_id=lesson_id))
            try:
                await db.commit()
            except IntegrityError:
                # A concurrent request recorded it first
                await db.rollback()
                return
        logger.info("Lesson completed", user_id=user_id, lesson_id=lesson_id)

    async def is_complete(self, user_id: str, lesson_id: str) -> bool:
        async with self._session_factory() as db:
            return await db.get(LessonProgressModel, (user_id, lesson_id)) is not None

    async def completed_lessons(self, user_id: str) -> list[str]:
        stmt = (
            select(LessonProgressModel.lesson_id)
            .where(LessonProgressModel.user_id == user_id)
            .order_by(LessonProgressModel.completed_at)
        )
        async with self._session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())
