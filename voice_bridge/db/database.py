"""Database engine and session factory."""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from voice_bridge.config.constants import LOGGER_NAME
from voice_bridge.db.models import Base

logger = logging.getLogger(LOGGER_NAME)


def to_async_url(database_url: str) -> str:
    """Convert a plain driver URL to its async counterpart."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def create_engine_from_url(database_url: str, **kwargs) -> AsyncEngine:
    """Create an async engine for the given URL."""
    return create_async_engine(to_async_url(database_url), echo=False, future=True, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory; every store operation opens its own short session."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create any missing tables (development and tests only)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")
