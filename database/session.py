"""
Database sessions for the follow-up store and the SQL event queue.

One async engine per process, built lazily from ``settings.database.url``.
Plain URLs are mapped to their async drivers:

  postgresql:// | postgres://  → postgresql+asyncpg://
  sqlite://                    → sqlite+aiosqlite://

Every store and queue call opens its own short transaction:

    async with get_session() as db:
        row = await db.get(EventQueueRow, event_id)

The worker calls ``init_db()`` before draining and ``close_db()`` on shutdown.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

# Claims hold a row lock only for one short transaction
_POSTGRES_POOL = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if db_url.startswith(plain):
            return driver + db_url[len(plain):]
    return db_url


def _engine_kwargs(db_url: str) -> dict:
    kwargs = {"echo": get_settings().debug}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(_POSTGRES_POOL)
    return kwargs


def _safe_url(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        db_url = _to_async_url(get_settings().database.url)
        _engine = create_async_engine(db_url, **_engine_kwargs(db_url))
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_safe_url(_engine))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Commit on clean exit, roll back and re-raise otherwise."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the follow-up and event-queue tables if missing."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose the engine; the next get_engine() builds a fresh one."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
