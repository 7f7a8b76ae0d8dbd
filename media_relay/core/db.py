"""Database connection and session management."""

import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from media_relay.core.config import Settings, settings

# Lazy database initialization - don't create engine at import time
engine: AsyncEngine | None = None
async_session_factory: async_sessionmaker[AsyncSession] | None = None


def async_database_url(database_url: str) -> str:
    """Rewrite a PostgreSQL URL to use the asyncpg driver."""
    if database_url.startswith("postgresql+psycopg2://"):
        return database_url.replace("postgresql+psycopg2://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return database_url


def create_session_factory(
    config: Settings | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Create an engine and session factory for the configured database."""
    config = config or settings
    new_engine = create_async_engine(
        async_database_url(config.DATABASE_URL),
        pool_size=config.MAX_CONNECTIONS,
        max_overflow=0,
        echo=False,
    )
    return async_sessionmaker(
        new_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def _initialize_database() -> None:
    """Initialize database engine and session factory."""
    global engine, async_session_factory

    if engine is not None:
        return  # Already initialized

    if os.getenv("TESTING") == "true":
        # Keep as None for testing - will be overridden in test fixtures
        return

    async_session_factory = create_session_factory(settings)
    engine = async_session_factory.kw["bind"]


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
    """Return the shared session factory, creating it on first use."""
    _initialize_database()
    return async_session_factory
