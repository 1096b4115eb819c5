"""
Async SQLAlchemy engine and session factory.

Services never share a session: each opens its own short transaction from
get_session_factory(), commits, and closes it before any network call.
expire_on_commit=False keeps returned ORM objects readable after commit.
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def _engine_options(database_url: str, settings) -> dict:
    options = {"echo": False, "pool_pre_ping": True}
    # SQLite (local runs) has no connection pool to size
    if database_url.startswith("sqlite"):
        return {"echo": False}
    options["pool_size"] = settings.database_pool_size
    options["max_overflow"] = settings.database_max_overflow
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from textgate.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url, **_engine_options(settings.database_url, settings),
        )
        logger.info("Database engine created (%s)", _engine.url.get_backend_name())
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Process-wide session factory for services that open their own transactions."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False,
        )
    return _session_factory


async def ping(session: AsyncSession) -> None:
    """Round-trip to the database. Raises if it is unreachable."""
    await session.execute(text("SELECT 1"))


async def dispose_engine() -> None:
    """Close pooled connections at shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read-only endpoints."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception as e:
            logger.debug("Database session error, rolling back: %s", str(e))
            await session.rollback()
            raise
