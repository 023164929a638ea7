"""Database engine, session factory, and base model.

Uses async SQLAlchemy with aiosqlite for local dev and asyncpg for production
PostgreSQL. ``create_engine_for`` is also what the test suite uses, so
in-memory SQLite gets the same pool handling everywhere.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool, StaticPool

from logward.config import settings


def is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and ":memory:" in url


def engine_options(url: str) -> dict:
    """Pool and connect arguments for a database URL."""
    if not url.startswith("sqlite"):
        return {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}
    options: dict = {"connect_args": {"timeout": 60, "check_same_thread": False}}
    # An in-memory database lives on one connection, so every session shares it.
    # File databases use NullPool; with WAL, reads proceed while a write is in progress.
    options["poolclass"] = StaticPool if is_memory_sqlite(url) else NullPool
    return options


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    engine = create_async_engine(url, echo=echo, **engine_options(url))
    if url.startswith("sqlite") and not is_memory_sqlite(url):
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = create_engine_for(settings.DATABASE_URL, echo=settings.DEBUG)
async_session_factory = session_factory_for(engine)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency that yields an async DB session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Create missing tables (dev / first run); production schemas come from Alembic."""
    # Registers the model tables on Base.metadata
    from logward.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db() -> None:
    await engine.dispose()
