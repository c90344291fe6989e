"""
Async SQLAlchemy engine and session management for the webhook ledger.

PostgreSQL (asyncpg) in production. SQLite (aiosqlite) works for local runs:
it has no connection pool sizing and no JSONB, so pool options are applied
per dialect. Sessions are created with expire_on_commit=False so ORM rows
stay readable after the pipeline's commit.
"""
import logging
from typing import Any, AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker | None = None


class Base(DeclarativeBase):
    pass


def engine_options(database_url: str, pool_size: int, max_overflow: int) -> dict[str, Any]:
    """create_async_engine kwargs for the URL's backend."""
    if make_url(database_url).get_backend_name() == "sqlite":
        return {}
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
    }


def _get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from hookledger.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            **engine_options(
                settings.database_url,
                settings.database_pool_size,
                settings.database_max_overflow,
            ),
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Shared sessionmaker; the pipeline opens one short session per step."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            _get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factory


def async_session_factory() -> AsyncSession:
    """A new session outside a request (workers, health checks)."""
    return get_session_factory()()


async def dispose_engine() -> None:
    """Close pooled connections at shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
