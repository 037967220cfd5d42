"""
Database connection and session management.

The engine and session factory are built by the application (or a test
fixture) and passed down explicitly; nothing here connects at import time.
"""

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

# Base class for models
Base = declarative_base()


# Partial unique indexes over waiting members. Plain SQL so the same
# statements work on PostgreSQL and SQLite.
WAITING_UNIQUENESS_DDL = (
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_queue_members_waiting_user "
    "ON queue_members (queue_id, user_id) WHERE status = 'waiting'",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_queue_members_waiting_name "
    "ON queue_members (queue_id, lower(display_name)) WHERE status = 'waiting'",
)


def build_engine(database_url: str, echo: bool = False, **kwargs: Any) -> AsyncEngine:
    """Create an async engine for the given URL."""
    if database_url.startswith("postgresql"):
        kwargs.setdefault("pool_pre_ping", True)  # Verify connections before using
    return create_async_engine(database_url, echo=echo, **kwargs)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine, enforce_waiting_uniqueness: bool = True) -> None:
    """
    Initialize database tables.

    With `enforce_waiting_uniqueness`, a second waiting entry for the same
    user or the same display name in one queue is rejected by the database
    itself instead of only by the read-then-write checks in the service.
    """
    # Models must be imported so their tables are registered on Base.metadata
    import waitline.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if enforce_waiting_uniqueness:
            for statement in WAITING_UNIQUENESS_DDL:
                await conn.execute(text(statement))
