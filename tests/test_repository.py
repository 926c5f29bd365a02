from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from exercise_runner.database import ProgressRepository, SubmissionRepository
from exercise_runner.database.models import Base
from exercise_runner.grading.ports import SubmissionFilter
from exercise_runner.models.schemas import (
    ProjectFileSchema,
    SubmissionRecord,
    SubmissionStatus,
    SubmissionSummary,
    TestOutcome,
    TestStatus,
)
from exercise_runner.sandbox.models import BackendKind

BASE_TIME = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'runner.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


def record(record_id, minutes=0, **overrides):
    outcomes = [
        TestOutcome(id="t1", name="adds", status=TestStatus.PASSED, duration_ms=3.5),
        TestOutcome(id="t2", name="hidden", status=TestStatus.FAILED, message="nope", hidden=True),
    ]
    fields = dict(
        id=record_id,
        session_id="s1",
        user_id="u1",
        lesson_id="l1",
        backend_kind=BackendKind.IN_PROCESS,
        files=[ProjectFileSchema(path="main.py", content="x = 1\n")],
        outcomes=outcomes,
        summary=SubmissionSummary.from_outcomes(outcomes),
        status=SubmissionStatus.PARTIAL,
        execution_output="hello\n",
        execution_time_ms=42.0,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        completed_at=BASE_TIME + timedelta(minutes=minutes, seconds=1),
    )
    fields.update(overrides)
    return SubmissionRecord(**fields)


async def test_save_and_load(session_factory):
    repo = SubmissionRepository(session_factory)
    original = record("a")
    await repo.save(original)

    loaded = await repo.get("a")
    assert loaded == original
    assert loaded.outcomes[1].message == "nope"
    assert loaded.summary.score == 50
    assert await repo.get("missing") is None


async def test_find_is_newest_first(session_factory):
    repo = SubmissionRepository(session_factory)
    for index, record_id in enumerate(["old", "mid", "new"]):
        await repo.save(record(record_id, minutes=index))

    found = await repo.find(SubmissionFilter())
    assert [r.id for r in found] == ["new", "mid", "old"]
    limited = await repo.find(SubmissionFilter(limit=2))
    assert [r.id for r in limited] == ["new", "mid"]


async def test_find_filters(session_factory):
    repo = SubmissionRepository(session_factory)
    await repo.save(record("a"))
    await repo.save(record("b", minutes=1, user_id="u2"))
    await repo.save(record("c", minutes=2, status=SubmissionStatus.SUCCESS, lesson_id="l2"))

    by_user = await repo.find(SubmissionFilter(user_id="u2"))
    assert [r.id for r in by_user] == ["b"]
    by_status = await repo.find(SubmissionFilter(status=SubmissionStatus.SUCCESS))
    assert [r.id for r in by_status] == ["c"]
    by_lesson = await repo.find(SubmissionFilter(user_id="u1", lesson_id="l1"))
    assert [r.id for r in by_lesson] == ["a"]
    assert await repo.find(SubmissionFilter(session_id="other")) == []


async def test_saving_twice_overwrites(session_factory):
    repo = SubmissionRepository(session_factory)
    await repo.save(record("a"))
    await repo.save(record("a", status=SubmissionStatus.SUCCESS, execution_output="again\n"))

    found = await repo.find(SubmissionFilter())
    assert len(found) == 1
    assert found[0].status is SubmissionStatus.SUCCESS
    assert found[0].execution_output == "again\n"


async def test_progress_is_idempotent(session_factory):
    progress = ProgressRepository(session_factory)
    assert not await progress.is_complete("u1", "l1")

    await progress.mark_lesson_complete("u1", "l1")
    await progress.mark_lesson_complete("u1", "l1")
    await progress.mark_lesson_complete("u1", "l2")

    assert await progress.is_complete("u1", "l1")
    assert sorted(await progress.completed_lessons("u1")) == ["l1", "l2"]
    assert await progress.completed_lessons("u2") == []
