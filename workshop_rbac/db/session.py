"""
Database Session Management
Async engine and session handling for the RBAC stores
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from workshop_rbac.core.config import settings
from workshop_rbac.core.logging import get_logger
from workshop_rbac.db.base import Base

logger = get_logger(__name__)

# Engines
engine: Optional[AsyncEngine] = None
resolver_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker] = None
resolver_session_maker: Optional[async_sessionmaker] = None


def _create_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.DEBUG, poolclass=NullPool)
    return create_async_engine(
        url,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
    )


async def init_db(
    database_url: Optional[str] = None,
    resolver_database_url: Optional[str] = None,
    create_tables: Optional[bool] = None,
) -> async_sessionmaker:
    """
    Initialize database engines

    The resolver gets its own engine so it can run under a dedicated,
    read-only role that may see rows hidden from the end caller.
    """
    global engine, resolver_engine, async_session_maker, resolver_session_maker

    url = database_url or settings.DATABASE_URL
    resolver_url = resolver_database_url or settings.RESOLVER_DATABASE_URL

    logger.info(f"Connecting to database ({url.split('://')[0]})")
    engine = _create_engine(url)
    async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    if resolver_url and resolver_url != url:
        resolver_engine = _create_engine(resolver_url)
        resolver_session_maker = async_sessionmaker(
            resolver_engine, class_=AsyncSession, expire_on_commit=False
        )
    else:
        resolver_engine = None
        resolver_session_maker = async_session_maker

    # Import models so they are registered with Base
    from workshop_rbac.db import models  # noqa: F401

    if create_tables is None:
        create_tables = settings.ENVIRONMENT in ("development", "testing")
    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    return async_session_maker


async def close_db() -> None:
    """Close database connections"""
    global engine, resolver_engine, async_session_maker, resolver_session_maker

    if resolver_engine:
        await resolver_engine.dispose()
    if engine:
        await engine.dispose()
        logger.info("Database connection closed")

    engine = None
    resolver_engine = None
    async_session_maker = None
    resolver_session_maker = None

