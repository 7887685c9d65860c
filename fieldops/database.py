"""
Async SQLAlchemy engine and sessions.

PostgreSQL (asyncpg) in production. A sqlite+aiosqlite URL works for local
runs; it gets no pool sizing since SQLite ignores it.
Sessions use expire_on_commit=False: workers keep reading claimed tasks after
the claim commit, and async code cannot lazy-load expired attributes.
"""
import logging
from typing import AsyncGenerator, Optional
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker] = None


def _engine_options(settings) -> dict:
    options = {"echo": settings.app_env == "development" and settings.log_level.upper() == "DEBUG"}
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    return options


def use_sqlite_transactions(engine: AsyncEngine) -> AsyncEngine:
    """
    Hand BEGIN over to SQLAlchemy on SQLite so savepoints (begin_nested) work.
    BEGIN IMMEDIATE takes the write lock up front; a second writer waits on the
    driver's busy timeout.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from fieldops.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **_engine_options(settings))
        if _engine.dialect.name == "sqlite":
            use_sqlite_transactions(_engine)
        logger.info("Database engine created (%s)", _engine.dialect.name)
    return _engine


def _get_sessionmaker() -> async_sessionmaker:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _sessionmaker


def async_session_factory() -> AsyncSession:
    """New session for the task runner, the timeout monitor and cron passes."""
    return _get_sessionmaker()()


async def dispose_engine() -> None:
    """Close pooled connections at shutdown."""
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency. Commits when the handler returns normally and rolls
    back when it raises.
    """
    async with _get_sessionmaker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
