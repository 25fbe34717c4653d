"""
Database engine and session factory.

Async SQLAlchemy engine shared by the API, the worker and the sweeper.
"""
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from lms_notify.config import settings


_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Bounded pool for asyncpg; SQLite manages its own connections
if not settings.DATABASE_URL.startswith("sqlite"):
    _engine_kwargs["pool_size"] = 10
    _engine_kwargs["max_overflow"] = 5
    _engine_kwargs["pool_recycle"] = 1800

engine = create_async_engine(settings.DATABASE_URL, echo=False, **_engine_kwargs)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a database session."""
    async with AsyncSessionLocal() as session:
        yield session
