"""Async database engine and session management.

Provides an async SQLAlchemy engine, session factory, a transaction helper that
wraps storage failures in StorageError, and helpers for initializing the schema
(for dev) and checking connectivity. Nothing runs on import; the application
lifespan calls start_db()/shutdown_db().
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from earthlord.core import config
from earthlord.core.errors import StorageError
from earthlord.models.database import Base

logger = logging.getLogger(__name__)

# Async engine/session globals; initialized on app startup to bind to the running loop
engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker] = None


def is_sqlite_url(url: str) -> bool:
    return str(url).startswith("sqlite")


def _engine_kwargs_for(url: str) -> dict:
    """Construct engine kwargs appropriate for a given database URL."""
    engine_kwargs: dict = {
        "echo": config.DB_ECHO,
        "pool_pre_ping": config.DB_POOL_PRE_PING,
    }
    if is_sqlite_url(url):
        engine_kwargs["poolclass"] = NullPool
        engine_kwargs["connect_args"] = {"timeout": config.SQLITE_BUSY_TIMEOUT_SECONDS}
    else:
        engine_kwargs.update({
            "pool_size": config.DB_POOL_SIZE,
            "max_overflow": config.DB_MAX_OVERFLOW,
            "pool_timeout": config.DB_POOL_TIMEOUT,
            "pool_recycle": config.DB_POOL_RECYCLE,
        })
    return engine_kwargs


def _install_sqlite_write_serialization(async_engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite's implicit BEGIN is deferred, which lets two read-then-write
    transactions interleave. Emitting BEGIN IMMEDIATE ourselves serializes
    writers across connections the way SELECT ... FOR UPDATE does on PostgreSQL.
    """

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(url: str) -> AsyncEngine:
    """Create an async engine for url with the project's pool and SQLite settings."""
    async_engine = create_async_engine(url, **_engine_kwargs_for(url))
    if is_sqlite_url(url):
        _install_sqlite_write_serialization(async_engine)
    return async_engine


def create_sessionmaker(async_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


def get_sessionmaker() -> async_sessionmaker:
    if SessionLocal is None:
        raise StorageError("Database is not started")
    return SessionLocal


@asynccontextmanager
async def transaction(sessionmaker: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """Open a session and a transaction that commits on success.

    Any SQLAlchemyError, raised inside the block or on commit, rolls back and is
    re-raised as StorageError with the original exception as its cause. Game
    errors raised inside the block roll back and propagate unchanged.
    """
    try:
        async with sessionmaker() as session:
            async with session.begin():
                yield session
    except SQLAlchemyError as exc:
        logger.error("db_transaction_failed", exc_info=True, extra={"action_type": "db_transaction_failed"})
        raise StorageError(f"Storage operation failed: {exc.__class__.__name__}") from exc


async def init_db(async_engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables via metadata.create_all (dev/test only).

    For production, prefer Alembic migrations instead of create_all.
    """
    target = async_engine or engine
    if target is None:
        logger.warning("init_db called but database is not started")
        return
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured via metadata.create_all")


async def check_database() -> bool:
    """Perform a simple health check against the database connection."""
    if engine is None:
        return False
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("DB health check failed: %s", exc)
        return False


async def start_db() -> None:
    """Initialize the async engine/sessionmaker within the current event loop.

    Safe to call multiple times; a no-op if already started. The URL is read at
    call time so tests can point the app at a temporary database.
    """
    global engine, SessionLocal
    if engine is not None and SessionLocal is not None:
        return
    url = config.get_database_url()
    engine = create_engine_for(url)
    SessionLocal = create_sessionmaker(engine)
    logger.info("db_started", extra={"action_type": "db_started", "dialect": engine.dialect.name})


async def shutdown_db() -> None:
    """Dispose the async engine within the running event loop.

    Connections must be closed on the loop that opened them to avoid asyncpg
    cross-loop termination errors during application shutdown.
    """
    global engine, SessionLocal
    try:
        if engine is not None:
            try:
                await engine.dispose()
            except (SQLAlchemyError, OSError) as exc:
                logger.warning("Error disposing DB engine: %s", exc)
    finally:
        engine = None
        SessionLocal = None


__all__ = [
    "engine",
    "SessionLocal",
    "create_engine_for",
    "create_sessionmaker",
    "get_sessionmaker",
    "transaction",
    "init_db",
    "check_database",
    "start_db",
    "shutdown_db",
]
