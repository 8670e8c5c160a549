"""Async SQLAlchemy engine + session factory.

Supports both SQLite (dev/tests) and PostgreSQL (prod) with appropriate pool settings.
"""
from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from config.settings import settings


def normalize_url(url: str) -> str:
    """Convert postgresql:// to postgresql+asyncpg:// for async support."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def install_sqlite_write_lock(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    SQLite ignores SELECT ... FOR UPDATE, so BEGIN IMMEDIATE is what serializes
    two deliveries touching the same subscription. pysqlite's own BEGIN
    handling is disabled so SAVEPOINTs work inside our transactions.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, **kwargs) -> AsyncEngine:
    url = normalize_url(url)
    is_sqlite = url.startswith("sqlite")

    engine_kwargs: dict = {"echo": False, "future": True}
    if not is_sqlite and "poolclass" not in kwargs:
        # Production PostgreSQL pool settings
        engine_kwargs.update({
            "pool_size": 10,
            "max_overflow": 20,
            "pool_timeout": 30,
            "pool_recycle": 1800,  # Recycle connections every 30 min
            "pool_pre_ping": True,  # Verify connections before use
        })
    engine_kwargs.update(kwargs)

    new_engine = create_async_engine(url, **engine_kwargs)
    if is_sqlite:
        install_sqlite_write_lock(new_engine)
    return new_engine


engine = build_engine(settings.DATABASE_URL)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    """Dependency for FastAPI — yields an async session."""
    async with async_session() as session:
        yield session


def get_sessionmaker() -> async_sessionmaker:
    """Dependency for FastAPI — the factory the webhook pipeline opens its own sessions from.

    Resolved at call time so tests can swap ``async_session``.
    """
    return async_session
