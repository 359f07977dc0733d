"""
Database session management.

This module provides utilities for creating and managing database sessions
using async SQLAlchemy with PostgreSQL (asyncpg) or SQLite (aiosqlite).
"""

from typing import AsyncGenerator, Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from tableside.core.config import settings, DatabaseSettings
from tableside.core.logging import logger
from tableside.models.base import Base


def engine_options(database: DatabaseSettings) -> Dict[str, Any]:
    """Pool options understood by the configured driver."""
    if database.is_sqlite:
        return {}
    return {
        "pool_size": database.pool_size,
        "max_overflow": database.max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": database.pool_recycle,
    }


# Create async engine
engine = create_async_engine(
    settings.database.url,
    echo=settings.debug and not settings.database.is_sqlite,
    **engine_options(settings.database),
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Get a database session.

    This function is used as a dependency in FastAPI endpoints to provide
    a database session. It ensures the session is properly closed after use.

    Yields:
        AsyncSession: Database session
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Database session error: {e}")
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_schema() -> None:
    """Create all tables registered on ``Base``. No-op for existing tables."""
    # Register models on the metadata before create_all
    import tableside.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")
