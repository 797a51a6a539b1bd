"""
Pars Database Connection and ORM Setup
"""
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = structlog.get_logger(__name__)

# Create declarative base for ORM models
Base = declarative_base()


def _import_models():
    """Import all ORM models to register them with Base.metadata"""
    try:
        from pars.models import AdminUser, Backup, UpdateLog  # noqa: F401

        logger.debug("orm_models_imported")
    except ImportError as e:
        logger.warning("failed_to_import_models", error=str(e))


# Global engine and session maker
engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker] = None


def to_async_url(database_url: str) -> str:
    """
    Convert a libpq-style database URL into its SQLAlchemy async form.

    postgres:// and postgresql:// become postgresql+asyncpg://; URLs that
    already name a driver (e.g. sqlite+aiosqlite://) are returned unchanged.
    """
    database_url_str = str(database_url)

    if database_url_str.startswith("postgres://"):
        return database_url_str.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url_str.startswith("postgresql://"):
        return database_url_str.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url_str


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """Create an async engine, applying pool settings only where the dialect supports them"""
    url = to_async_url(database_url)

    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)

    return create_async_engine(
        url,
        echo=False,  # Set to True for SQL query logging
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
    )


async def init_database(database_url: str):
    """Initialize database connection"""
    global engine, async_session_maker

    # Import models first to register them with Base.metadata
    _import_models()

    logger.info("connecting_to_database")

    engine = create_engine_for_url(database_url)

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    # Schema is owned by Alembic migrations
    logger.info("database_initialized")


async def close_database():
    """Close database connections"""
    global engine

    if engine:
        logger.info("closing_database_connections")
        await engine.dispose()


def get_session_maker() -> async_sessionmaker:
    """Return the global session factory used by long-lived services"""
    if async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return async_session_maker
