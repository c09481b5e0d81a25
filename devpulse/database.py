"""
Async SQLAlchemy engine and sessions shared by the API, the worker pool and
the replay command.

PostgreSQL (asyncpg) in production. Every session is created with
expire_on_commit=False: workers keep using ORM rows after committing, and an
expired attribute would trigger lazy IO outside the greenlet.
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


class Base(DeclarativeBase):
    pass


def engine_options(database_url: str, pool_size: int, max_overflow: int) -> dict:
    """Pool sizing applies to server databases only; SQLite uses a static pool."""
    if make_url(database_url).get_backend_name() == "sqlite":
        return {}
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from devpulse.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            **engine_options(
                settings.database_url,
                settings.database_pool_size,
                settings.database_max_overflow,
            ),
        )
        logger.info("Database engine created for %s", make_url(settings.database_url).render_as_string())
    return _engine


def _get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _sessionmaker


def async_session_factory() -> AsyncSession:
    """New session outside a request (workers, scripts). Caller commits."""
    return _get_sessionmaker()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session: committed when the endpoint returns, rolled back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _sessionmaker = None
