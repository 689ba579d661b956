"""
Database Connection Module
Handles PostgreSQL connection using SQLAlchemy async engine.

Only used when USE_DATABASE=true; otherwise session snapshots stay in memory.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from group_ordering.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Create async engine (psycopg async driver)
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,  # logs all SQL queries
    pool_size=5,  # Connection pool size
    max_overflow=10  # Extra connections when pool is full
)

# Session factory - creates new database sessions
async_session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False  # Objects remain accessible after commit
)


@asynccontextmanager
async def task_session_maker(database_url: Optional[str] = None) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """
    Session factory for one Celery task run.

    Every task runs its own event loop (asyncio.run) and async connections
    belong to the loop that opened them, so the worker gets a pool-less
    engine that is disposed before the loop closes.
    """
    task_engine = create_async_engine(
        database_url or settings.database_url,
        echo=settings.debug,
        poolclass=NullPool,
    )
    try:
        yield async_sessionmaker(bind=task_engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await task_engine.dispose()


# Base class for all our models
class Base(DeclarativeBase):
    pass


async def init_db():
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Registers the tables on Base.metadata
    from group_ordering import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables created successfully!")
