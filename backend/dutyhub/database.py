"""Database engine and helpers.

This module configures the async SQLModel/SQLAlchemy engine (SQLite via
aiosqlite by default) and provides small helpers used by the services
and tests. SQLite does not enforce foreign keys unless asked to, so every
new SQLite connection turns them on; the cascade/restrict rules declared
in `models` depend on it.
"""

from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from . import models  # noqa: F401  (registers tables on SQLModel.metadata)
from .config import settings


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """Create an async engine for `url` (defaults to the configured URL)."""
    url = url or settings.DATABASE_URL
    async_engine = create_async_engine(url, echo=settings.DATABASE_ECHO if echo is None else echo)
    if async_engine.dialect.name == "sqlite":
        event.listen(async_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return async_engine


def build_session_factory(async_engine: AsyncEngine) -> async_sessionmaker:
    """Session factory whose instances keep their state after commit.

    Attribute expiry on commit would force lazy reloads, which async
    sessions cannot do implicitly.
    """
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
session_factory = build_session_factory(engine)


async def create_db_and_tables(async_engine: Optional[AsyncEngine] = None) -> None:
    """Create database tables using SQLModel metadata.

    This function is intended for local development and tests; production
    deployments should rely on a proper migration tool (alembic) instead.
    """
    async with (async_engine or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a database `AsyncSession`, closing it when the caller is done."""
    async with session_factory() as session:
        yield session
