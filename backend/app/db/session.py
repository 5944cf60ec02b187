"""
Database session configuration.

Async SQLAlchemy engine and session factory. The ledgers lock balance rows
with SELECT ... FOR UPDATE, which needs READ COMMITTED or stronger on
PostgreSQL.
"""

from typing import Any, Dict

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from backend.app.core.config import settings


def engine_options(database_url: str) -> Dict[str, Any]:
    """Engine keyword arguments for the configured backend."""
    options: Dict[str, Any] = {"echo": settings.db_echo, "future": True}
    if database_url.startswith("sqlite"):
        # Local development only; SQLite has no pool sizing or row locks
        return options
    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        isolation_level="READ COMMITTED",
    )
    return options


engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))

# Services flush, endpoints commit
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db():
    """
    FastAPI dependency for database sessions.

    Anything left uncommitted when the request fails is rolled back.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
