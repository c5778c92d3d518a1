"""
Database Configuration for the Billing Engine

Async SQLAlchemy engine and session management. Services receive the
session factory and open one transaction per unit of work; request
handlers that only read can use the per-request session dependency.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy import text
from sqlmodel import SQLModel

from app.config.settings import settings
from app.infrastructure.exceptions import ConfigurationError


def normalize_database_url(database_url: str) -> str:
    """Force an async driver onto plain PostgreSQL URLs."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return database_url


class DatabaseManager:
    """
    Manages async database connections and sessions.

    Singleton so the whole process shares one connection pool.
    """

    _instance: Optional["DatabaseManager"] = None
    _engine: Optional[AsyncEngine] = None
    _session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    def __new__(cls) -> "DatabaseManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def engine(self) -> AsyncEngine:
        """Get or create async engine with connection pooling."""
        if self._engine is None:
            self._initialize_engine()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create session factory."""
        if self._session_factory is None:
            self._initialize_engine()
        return self._session_factory

    def _initialize_engine(self) -> None:
        """Initialize async engine; pool sizing applies to server databases only."""
        if not settings.database_url:
            raise ConfigurationError(
                "DATABASE_URL is required",
                missing_keys=["DATABASE_URL"],
            )
        database_url = normalize_database_url(settings.database_url)

        engine_kwargs = {"echo": settings.database_echo}
        if not database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_pre_ping=True,  # Verify connections before use
            )

        self._engine = create_async_engine(database_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_tables(self) -> None:
        """Create all tables from SQLModel metadata."""
        import app.infrastructure.db.models  # noqa: F401  (register tables)

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def drop_tables(self) -> None:
        """Drop all tables (use with caution, mainly for testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.drop_all)

    async def close(self) -> None:
        """Close engine and dispose of connection pool."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


# Global instance (lazy initialization)
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get or create the database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Dependency for services that manage their own transactions.

    Tests override this to point at an in-memory database.
    """
    return get_db_manager().session_factory


async def get_session(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency injection for async database sessions.

    Yields:
        AsyncSession: Database session that auto-closes after use
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions outside FastAPI requests.

    Usage:
        async with get_session_context() as session:
            result = await session.execute(query)
    """
    db = get_db_manager()
    async with db.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database connection pool (called on app startup)."""
    db = get_db_manager()
    async with db.session_factory() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    """Close database connection pool (called on app shutdown)."""
    db = get_db_manager()
    await db.close()
