# database.py - Async database setup for the document store
import os
import logging

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

logger = logging.getLogger("taskboard.db")

# Database configuration
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./taskboard.db"
)


def _engine_options(url: str) -> dict:
    options = {
        "echo": os.getenv("SQL_ECHO", "false").lower() == "true",
        "future": True,
    }
    if url.startswith("sqlite"):
        # One connection per session; SQLite serialises writers anyway
        options["poolclass"] = NullPool
    else:
        options.update(
            pool_size=20,
            max_overflow=0,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return options


def create_engine_for(url: str):
    return create_async_engine(url, **_engine_options(url))


def create_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Create async engine and session factory
engine = create_engine_for(DATABASE_URL)
async_session_maker = create_session_factory(engine)


async def init_db(bind=None):
    """Initialize database and create tables"""
    from models import Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized")


async def close_db():
    """Close database connection pool"""
    await engine.dispose()
