"""
Outbound collaborators of the submission orchestrator.

The orchestrator hands finished records to a persistence port and reports
completed lessons to a progress port.  In-memory adapters live here; the
SQLAlchemy adapters live in ``exercise_runner.database``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from exercise_runner.models.schemas import SubmissionRecord, SubmissionStatus


@dataclass
class SubmissionFilter:
    """Criteria for ``PersistencePort.find``. Unset fields match anything."""

    session_id: str | None = None
    user_id: str | None = None
    lesson_id: str | None = None
    status: SubmissionStatus | None = None
    limit: int = 50

    def matches(self, record: SubmissionRecord) -> bool:
        return (
            (self.session_id is None or record.session_id == self.session_id)
            and (self.user_id is None or record.user_id == self.user_id)
            and (self.lesson_id is None or record.lesson_id == self.lesson_id)
            and (self.status is None or record.status == self.status)
        )


class PersistencePort(ABC):
    """Stores finished submissions."""

    @abstractmethod
    async def save(self, record: SubmissionRecord) -> None:
        """Persist a record; saving the same id twice overwrites it."""
        pass

    @abstractmethod
    async def find(self, criteria: SubmissionFilter) -> list[SubmissionRecord]:
        """Return matching records, newest first."""
        pass


class ProgressPort(ABC):
    """Tracks which lessons a user has completed."""

    @abstractmethod
    async def mark_lesson_complete(self, user_id: str, lesson_id: str) -> None:
        """Idempotently mark a lesson as completed."""
        pass


class InMemorySubmissionStore(PersistencePort):
    """Process-local persistence, used in tests and when no database is available."""

    def __init__(self) -> None:
        self._records: dict[str, SubmissionRecord] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: SubmissionRecord) -> None:
        async with self._lock:
            self._records[record.id] = record.model_copy(deep=True)

    async def find(self, criteria: SubmissionFilter) -> list[SubmissionRecord]:
        async with self._lock:
            matches = [r for r in self._records.values() if criteria.matches(r)]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return matches[: criteria.limit]


class InMemoryProgressTracker(ProgressPort):
    """Process-local lesson progress."""

    def __init__(self) -> None:
        self._completed: set[tuple[str, str]] = set()

    async def mark_lesson_complete(self, user_id: str, lesson_id: str) -> None:
        self._completed.add((user_id, lesson_id))

    def is_complete(self, user_id: str, lesson_id: str) -> bool:
        return (user_id, lesson_id) in self._completed
