"""
Async SQLAlchemy engine and session factory construction.
The process entry point owns the engine; components receive the session factory.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)

from core.config import Settings
from core.exceptions import ConfigurationError
from core.logging import get_logger

logger = get_logger(__name__)

ASYNC_DRIVERS = ("postgresql+asyncpg", "sqlite+aiosqlite")


def create_engine(settings: Settings) -> AsyncEngine:
    """Create an async engine with pooling appropriate for the backend."""
    scheme = settings.DATABASE_URL.split("://", 1)[0].lower()
    if scheme not in ASYNC_DRIVERS:
        raise ConfigurationError(
            "DATABASE_URL must use an async driver: " + " or ".join(ASYNC_DRIVERS),
            detail=scheme,
        )

    if settings.DATABASE_URL.startswith("sqlite"):
        return create_async_engine(
            settings.DATABASE_URL,
            connect_args={"timeout": settings.DATABASE_SQLITE_BUSY_TIMEOUT},
            echo=settings.DEBUG,
        )
    return create_async_engine(
        settings.DATABASE_URL,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        pool_pre_ping=True,
        echo=settings.DEBUG,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope: commits on success and rolls back on error.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables on startup."""
    from database.models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


async def ping_db(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
