"""
Async SQLAlchemy engine and session management.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from structlog import get_logger

from exercise_runner.config import get_settings

logger = get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(url: str | None = None) -> None:
    """
    Initialize the database engine, session factory, and create tables.

    Called once during application startup.
    """
    global _engine, _session_factory

    settings = get_settings()
    db_url = url or settings.database.url

    engine_kwargs: dict = {"echo": settings.database.echo}
    if make_url(db_url).get_backend_name() != "sqlite":
        engine_kwargs["pool_size"] = settings.database.pool_size
        engine_kwargs["max_overflow"] = settings.database.max_overflow

    engine = create_async_engine(db_url, **engine_kwargs)

    # Auto-create tables (use migrations for anything long-lived)
    from .models import Base

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception:
        await engine.dispose()
        raise

    _engine = engine
    _session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    logger.info("Database initialized", url=db_url.split("@")[-1])  # hide credentials


async def close_db() -> None:
    """Dispose of the engine and release connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the current session factory (raises if not initialized)."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized, call init_db() first")
    return _session_factory
