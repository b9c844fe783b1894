"""PostgreSQL engine and sessions (async SQLAlchemy + asyncpg).

One engine per process, created in the app lifespan (or by a script) and
disposed on shutdown. `get_session()` is a unit of work: commit on success,
rollback on error.

Read-side repositories open their own short sessions so independent queries
(e.g. the two alternative sources) can run concurrently; the ingestion write
path shares one session for the receipt and its items.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.settings import get_settings


class Base(DeclarativeBase):
    """Declarative base for receipts, items, patterns, feedback and price snapshots."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _require_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


async def init_db() -> None:
    """Create the engine and session factory from settings."""
    global _engine, _session_factory

    settings = get_settings()
    _engine = create_async_engine(
        settings.async_database_url,
        echo=settings.debug,
        connect_args=settings.asyncpg_connect_args,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)


async def ping_db() -> None:
    """Fail fast when Postgres is unreachable."""
    async with _require_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Unit of work.

    Usage:
        async with get_session() as session:
            repo = SqlReceiptRepository(session)
            ...
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
