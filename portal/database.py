"""Database engine and session handling.

The engine is created on first use so it binds to the running event loop.
Production runs on PostgreSQL through asyncpg with a connection pool;
SQLite (aiosqlite) is supported for tests and local runs, without a pool
and with foreign keys switched on so ``ON DELETE CASCADE`` holds there too.
"""

from collections.abc import AsyncGenerator
from typing import Optional

from sqlalchemy import event, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from portal.config import settings
from portal.logging_config import get_logger

logger = get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _build_engine(url: str) -> AsyncEngine:
    if _is_sqlite(url):
        engine = create_async_engine(
            url,
            echo=settings.database_echo,
            poolclass=NullPool,
            connect_args={"timeout": settings.database_sqlite_busy_timeout_seconds},
        )
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    if settings.testing:
        return create_async_engine(url, echo=settings.database_echo, poolclass=NullPool)

    return create_async_engine(
        url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
    )


def get_engine() -> AsyncEngine:
    """Return the process engine, creating it on first call."""
    global _engine
    if _engine is None:
        _engine = _build_engine(settings.database_url)
        logger.debug(
            "Database engine created",
            backend=_engine.url.get_backend_name(),
            pooled=not isinstance(_engine.pool, NullPool),
        )
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session per request.

    A storage error escaping the request rolls the session back before it
    is closed.
    """
    async with get_session_maker()() as session:
        try:
            yield session
        except SQLAlchemyError:
            await session.rollback()
            raise


async def check_database_connection() -> bool:
    """True if ``SELECT 1`` succeeds against the configured database."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return False
    return True


async def close_database() -> None:
    """Dispose of the engine; the next ``get_engine`` call builds a new one."""
    global _engine, _async_session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None


async def reset_database() -> None:
    """Drop the engine so tests on a fresh event loop get a new one."""
    await close_database()
