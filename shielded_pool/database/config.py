"""
Async database engine and session factory.

SQLite (aiosqlite) by default; any SQLAlchemy async URL works, e.g.
postgresql+asyncpg://... via DATABASE_URL.
"""
from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from shielded_pool import config
from shielded_pool.api.logging_config import get_logger
from shielded_pool.database.models import Base

logger = get_logger("database.config")

_engine: Optional[AsyncEngine] = None


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(parsed.database)), exist_ok=True)


def create_engine_for(url: Optional[str] = None, echo: bool = config.DATABASE_ECHO) -> AsyncEngine:
    """Build a new engine (callers own and dispose it)."""
    url = url or config.DATABASE_URL
    _ensure_sqlite_dir(url)
    return create_async_engine(url, echo=echo)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    """Process-wide engine for DATABASE_URL, created lazily."""
    global _engine
    if _engine is None:
        _engine = create_engine_for()
        logger.info(f"Database engine created for {make_url(config.DATABASE_URL).render_as_string(hide_password=True)}")
    return _engine


async def init_database(engine: Optional[AsyncEngine] = None) -> None:
    """Create tables that do not exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def test_connection_async(engine: Optional[AsyncEngine] = None) -> bool:
    """Raises on failure; used by the health checks."""
    engine = engine or get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True


async def dispose_engine() -> None:
    """Release the process-wide engine, if one was created."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
