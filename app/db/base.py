"""Database base configuration for SQLAlchemy with SQLModel.

This module provides the async engine, the session factory and a
connectivity check used by the health endpoint.
"""

from typing import AsyncGenerator, Dict
import asyncio
import logging
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.sql import text
from sqlmodel import SQLModel

from app.core.config import settings

logger = logging.getLogger(__name__)

# Mapping of environment to SQLAlchemy engine configurations
ENGINE_CONFIGS: Dict[str, Dict] = {
    "development": {
        "echo": settings.DB_ECHO,
        "pool_size": settings.POSTGRES_POOL_SIZE,
        "max_overflow": settings.POSTGRES_POOL_MAX_OVERFLOW,
        "pool_timeout": settings.POSTGRES_POOL_TIMEOUT,
        "pool_recycle": settings.POSTGRES_POOL_RECYCLE,
        "pool_pre_ping": True,
    },
    "production": {
        "echo": False,
        "pool_size": settings.POSTGRES_POOL_SIZE,
        "max_overflow": settings.POSTGRES_POOL_MAX_OVERFLOW,
        "pool_timeout": settings.POSTGRES_POOL_TIMEOUT,
        "pool_recycle": settings.POSTGRES_POOL_RECYCLE,
        "pool_pre_ping": True,
    },
    "testing": {
        "echo": False,
        "poolclass": NullPool,
    },
}


def get_engine_config() -> Dict:
    """Get the engine configuration for the current environment."""
    if settings.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        # SQLite does not accept the queue pool sizing arguments
        if ":memory:" in settings.SQLALCHEMY_DATABASE_URI:
            # one shared connection, otherwise every session sees an empty database
            return {
                "echo": settings.DB_ECHO,
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }
        return {"echo": settings.DB_ECHO}
    env = settings.ENVIRONMENT.value
    return ENGINE_CONFIGS.get(env, ENGINE_CONFIGS["development"])


def get_engine() -> AsyncEngine:
    """Create and configure an async SQLAlchemy engine."""
    engine_url = str(settings.SQLALCHEMY_DATABASE_URI)
    logger.info(f"Creating database engine for {engine_url.split('@')[-1]}")
    async_engine = create_async_engine(engine_url, **get_engine_config())

    if engine_url.startswith("sqlite"):
        # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection
        @event.listens_for(async_engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return async_engine


# Shared async engine instance
engine = get_engine()

# Async session factory
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get async session with proper cleanup.

    Yields:
        AsyncSession: SQLAlchemy async session
    """
    session = async_session_factory()
    try:
        yield session
    finally:
        await session.close()


class DatabaseHealthCheck:
    """Health check functionality for the database connection."""

    @staticmethod
    async def check_connection() -> Dict:
        """Check database connectivity and return status with latency."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        status = "healthy"
        error_message = None
        latency_ms = 0

        try:
            async with async_session_factory() as session:
                await session.execute(text("SELECT 1"))
            latency_ms = int((loop.time() - start_time) * 1000)
        except Exception as e:
            status = "unhealthy"
            error_message = str(e)
            logger.error(f"Database health check failed: {e}")

        return {
            "status": status,
            "latency_ms": latency_ms,
            "error": error_message,
        }


async def create_tables() -> None:
    """Create tables missing from the database (existing tables are left alone)."""
    # Registers every table model on SQLModel.metadata
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables verified")
