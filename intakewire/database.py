"""
Async SQLAlchemy engine and sessions.

Two entry points:
- get_db(): FastAPI dependency, one session per request, committed on success
- async_session_factory(): sessions for dispatcher handlers and the sweeper,
  which run outside any request

expire_on_commit=False so handlers can read rows after committing them.
"""
import logging
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker | None = None


class Base(DeclarativeBase):
    pass


def _engine_options(database_url: str, settings) -> dict:
    options = {"echo": settings.app_env == "development"}
    # SQLite (local runs) has no connection pool to size
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from intakewire.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            **_engine_options(settings.database_url, settings),
        )
    return _engine


def _get_session_maker() -> async_sessionmaker:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_maker


def async_session_factory() -> AsyncSession:
    """New session for background work (dispatcher handlers, sweeper)."""
    return _get_session_maker()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session."""
    async with _get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.debug("Request session error, rolling back: %s", str(e))
            await session.rollback()
            raise


async def dispose_engine() -> None:
    """Close pooled connections at shutdown."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _session_maker = None
