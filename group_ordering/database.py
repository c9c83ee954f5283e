"""
Group Ordering - Database Engine.

============================================================
PURPOSE
============================================================
Async engine and session management for the SQL stores.

Requirements:
- SQLAlchemy async engine (asyncpg in production, aiosqlite in tests)
- Explicit transaction boundaries
- Hard failures on persistence errors

============================================================
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig
from .models import Base


logger = logging.getLogger(__name__)


# =============================================================
# ENGINE
# =============================================================

def create_engine_from_config(config: Optional[DatabaseConfig] = None) -> AsyncEngine:
    """
    Create the async engine.

    In-memory SQLite shares one connection so every session
    sees the same database.
    """
    config = config or DatabaseConfig()

    kwargs = {"echo": config.echo}
    if ":memory:" in config.url:
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}

    logger.info(f"Creating database engine for: {config.url.split('@')[-1]}")
    return create_async_engine(config.url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory used by the SQL repositories."""
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================
# SESSION MANAGEMENT
# =============================================================

@asynccontextmanager
async def session_scope(factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception and re-raises.

    Usage:
        async with session_scope(factory) as session:
            session.add(model)
            # Commits automatically at end
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        await session.rollback()
        raise
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# =============================================================
# DATABASE INITIALIZATION
# =============================================================

async def create_all_tables(engine: AsyncEngine) -> None:
    """Create all tables defined in ORM models."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def drop_all_tables(engine: AsyncEngine) -> None:
    """Drop all tables. Tests only."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
