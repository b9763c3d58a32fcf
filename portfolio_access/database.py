"""Async database connection and session management utilities."""

import os
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker
)
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy import event, text
import logging

from dotenv import load_dotenv

from .constants import CONNECTION_POOL_DEFAULTS
from .models import Base

logger = logging.getLogger(__name__)

load_dotenv()


def normalize_database_url(database_url: str) -> str:
    """Rewrite a database URL to its async driver form.

    Args:
        database_url: PostgreSQL or SQLite connection string

    Returns:
        str: URL using asyncpg (PostgreSQL) or aiosqlite (SQLite)

    Raises:
        ValueError: If the URL is for an unsupported backend
    """
    if database_url.startswith("postgresql+asyncpg://"):
        return database_url
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite+aiosqlite://"):
        return database_url
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    raise ValueError("Database URL must be PostgreSQL or SQLite")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE / SET NULL unless enabled per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Manages async database connections with connection pooling."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database manager.

        Args:
            database_url: Connection string. If not provided, will use the
                         DATABASE_URL environment variable.
        """
        database_url = database_url or os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL not provided or set in environment")

        self.database_url = normalize_database_url(database_url)
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None

    @property
    def is_postgresql(self) -> bool:
        return self.database_url.startswith("postgresql")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def _default_engine_config(self) -> dict:
        config = {"echo": os.getenv("SQL_ECHO", "false").lower() == "true"}

        if self.is_sqlite:
            # In-memory databases live on a single shared connection
            if ":memory:" in self.database_url or self.database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
                config["poolclass"] = StaticPool
                config["connect_args"] = {"check_same_thread": False}
            return config

        config.update({
            "pool_size": int(os.getenv("DB_POOL_SIZE", str(CONNECTION_POOL_DEFAULTS["pool_size"]))),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", str(CONNECTION_POOL_DEFAULTS["max_overflow"]))),
            "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", str(CONNECTION_POOL_DEFAULTS["pool_timeout"]))),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", str(CONNECTION_POOL_DEFAULTS["pool_recycle"]))),
            "pool_pre_ping": True,  # Verify connections before use
        })

        # Use NullPool for serverless environments
        if os.getenv("SERVERLESS", "false").lower() == "true":
            config["poolclass"] = NullPool
            config.pop("pool_size", None)
            config.pop("max_overflow", None)

        return config

    async def initialize(self, **engine_kwargs):
        """Initialize the database engine and session factory.

        Args:
            **engine_kwargs: Additional arguments for create_async_engine
        """
        if self._engine is not None:
            return

        # Merge with provided kwargs
        config = {**self._default_engine_config(), **engine_kwargs}

        self._engine = create_async_engine(self.database_url, **config)

        if self.is_sqlite:
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        self._sessionmaker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        # Test connection
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                logger.info("Database connection established")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            await self.close()
            raise

    async def create_all(self):
        """Create all tables from the ORM metadata.

        Intended for development and tests. Production databases are managed
        with the Alembic migrations shipped in this package.
        """
        if self._engine is None:
            await self.initialize()
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self):
        """Drop all tables from the ORM metadata."""
        if self._engine is None:
            await self.initialize()
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def close(self):
        """Close the database engine."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an async database session.

        Commits on normal exit and rolls back if the block raises.

        Yields:
            AsyncSession: Database session for executing queries

        Example:
            async with db_manager.get_session() as session:
                result = await session.execute(select(Membership))
                memberships = result.scalars().all()
        """
        if self._sessionmaker is None:
            await self.initialize()

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a session with explicit transaction control.

        Every mutating access-control operation runs inside exactly one of
        these blocks: authorization, invariant checks, the mutation and its
        audit entry commit together or not at all.

        Example:
            async with db_manager.transaction() as session:
                # All operations in transaction
                await session.execute(...)
                # Commits on exit, rolls back on exception
        """
        if self._sessionmaker is None:
            await self.initialize()

        async with self._sessionmaker() as session:
            try:
                async with session.begin():
                    yield session
            except Exception as e:
                logger.debug(f"Transaction rolled back: {e!r}")
                raise

    async def health_check(self) -> bool:
        """Check if database is accessible.

        Returns:
            bool: True if database is healthy
        """
        try:
            async with self.get_session() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get the global database manager instance.

    Returns:
        DatabaseManager: Global database manager
    """
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session from the global manager.

    Yields:
        AsyncSession: Database session

    Example:
        async with get_session() as session:
            result = await session.execute(select(Membership))
    """
    db_manager = get_db_manager()
    async with db_manager.get_session() as session:
        yield session


async def init_db():
    """Initialize the global database manager.

    Should be called during application startup.
    """
    db_manager = get_db_manager()
    await db_manager.initialize()


async def close_db():
    """Close the global database manager.

    Should be called during application shutdown.
    """
    global _db_manager
    if _db_manager:
        await _db_manager.close()
        _db_manager = None
