"""Database configuration and async session management."""

from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from .config import settings

# Seconds a SQLite writer waits on another connection's write lock
SQLITE_BUSY_TIMEOUT = 30

# Create declarative base for models
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given database URL.

    In-memory SQLite shares one connection through StaticPool; file-backed
    SQLite gets a busy timeout so concurrent writers queue on the database
    lock instead of failing immediately.

    Args:
        database_url: SQLAlchemy async database URL
        echo: Whether to log emitted SQL

    Returns:
        AsyncEngine: Configured engine
    """
    engine_kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": SQLITE_BUSY_TIMEOUT,
        }
        if ":memory:" in database_url:
            engine_kwargs["poolclass"] = StaticPool

    return create_async_engine(database_url, **engine_kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory whose objects stay readable after commit."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Create async engine and session factory
engine = build_engine(settings.database_url, echo=settings.debug)
async_session_factory = build_session_factory(engine)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function that yields database sessions.

    Yields:
        AsyncSession: Database session
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_tables(bind: AsyncEngine) -> None:
    """Create every table registered on the declarative base."""
    # Register all models on the metadata before creating tables
    from .. import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Initialize the database by creating all tables."""
    await create_tables(engine)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
