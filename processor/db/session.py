"""
Database engine and session management.

Two tables live behind this engine:
  processing_jobs — the durable job ledger owned by this service
  pages           — the external owner-entity table; only the processing
                    columns are mapped (see models/pages.py)

Flow:
  Every ledger / repository operation opens its own short transaction via
  session_scope(). Commits happen on context exit; any exception rolls the
  transaction back so partial state is never visible to other workers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from processor.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def create_engine(database_url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """
    Build an async engine. Pool sizing applies to server databases only;
    SQLite (tests, single-node dev) uses the dialect's default pool.
    """
    url = database_url or settings.database_url
    kwargs: dict = {"echo": settings.db_echo_sql if echo is None else echo}

    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,          # detect stale connections before use
            pool_recycle=3600,           # recycle connections every hour
        )
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    return create_engine()


# ---------------------------------------------------------------------------
# Transaction helper
# ---------------------------------------------------------------------------

@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session inside a single transaction.
    Commits on clean exit; rolls back and re-raises on error.
    """
    async with factory() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Schema bootstrap (dev / tests) and health check
# ---------------------------------------------------------------------------

async def create_tables(engine: AsyncEngine) -> None:
    """Create the ledger table (and the mapped pages subset, for local dev)."""
    from processor.models.base import Base
    import processor.models.jobs   # noqa: F401  register mappers
    import processor.models.pages  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_health(engine: AsyncEngine | None = None) -> dict:
    """Ping the database; used by /ready and startup."""
    try:
        async with (engine or get_engine()).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
