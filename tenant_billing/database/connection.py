"""Database engine and session management."""
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from tenant_billing.config import Settings
from tenant_billing.database.models import Base


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    SQLite URLs (tests, local runs) share one in-process connection.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    kwargs: Dict[str, Any] = {"echo": settings.database_echo}
    if settings.database_url.startswith("sqlite"):
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    return create_async_engine(settings.database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory bound to an engine.

    Returns:
        async_sessionmaker: SQLAlchemy async session factory
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections and dispose of the engine."""
    await engine.dispose()
