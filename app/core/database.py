"""
Database Connection and Session Management
Async SQLAlchemy setup shared by the API and the Celery workers
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict

from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from sqlalchemy.types import TypeDecorator
import logging

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, also on backends that drop tzinfo (SQLite)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _engine_options(url: str) -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "echo": settings.DEBUG,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        return options
    if settings.ENVIRONMENT == "testing":
        options["poolclass"] = NullPool
        return options
    options.update(
        pool_size=20,
        max_overflow=30,
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_timeout=30,
    )
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; commits on success, rolls back on error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def create_task_session() -> AsyncGenerator[AsyncSession, None]:
    """Session for Celery tasks, which run outside the request lifecycle."""
    task_engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    session_factory = async_sessionmaker(task_engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
    finally:
        await task_engine.dispose()


async def close_db():
    await engine.dispose()
    logger.info("Database connections closed")
