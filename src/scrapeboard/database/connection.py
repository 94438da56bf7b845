"""Database connection management for SQLite."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import PersistError
from ..foundation.logging import get_logger

logger = get_logger(__name__)

IN_MEMORY = ":memory:"


class DatabaseManager:
    """Manages SQLite database connections and sessions."""

    def __init__(self, config_manager: Optional[ConfigManager] = None, database_path: Optional[str] = None):
        self.config_manager = config_manager or get_config_manager()
        self._database_path = database_path
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        # All sessions share one connection, so they take turns.
        self._session_lock = asyncio.Lock()

    @property
    def database_path(self) -> str:
        if self._database_path:
            return self._database_path
        return self.config_manager.get_setting("storage.database_path", "~/.scrapeboard/scrapeboard.db")

    @property
    def database_url(self) -> str:
        """Get the database URL from configuration."""
        db_path = self.database_path
        if db_path == IN_MEMORY:
            return f"sqlite+aiosqlite:///{IN_MEMORY}"

        path = Path(db_path).expanduser().resolve()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistError(f"Failed to create database directory {path.parent}: {e}", operation="connect")

        return f"sqlite+aiosqlite:///{path}"

    @property
    def engine(self) -> AsyncEngine:
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = create_async_engine(
                self.database_url,
                echo=self.config_manager.get_setting("storage.echo", False),
                poolclass=StaticPool,
                connect_args={
                    "check_same_thread": False,
                    "timeout": 30,
                },
            )

            synchronous = self.config_manager.get_setting("storage.sqlite_synchronous", "NORMAL")
            cache_size = int(self.config_manager.get_setting("storage.sqlite_cache_size", 10000))
            wal_mode = self.config_manager.get_setting("storage.sqlite_wal_mode", True)

            @event.listens_for(self._engine.sync_engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                if wal_mode:
                    cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute(f"PRAGMA synchronous={synchronous}")
                cursor.execute(f"PRAGMA cache_size={cache_size}")
                cursor.execute("PRAGMA temp_store=MEMORY")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            logger.info(f"Created database engine: {self.database_url}")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session that commits on success and rolls back on error.

        Sessions are serialized; do not open one while holding another.
        """
        async with self._session_lock:
            session = self.session_factory()
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise
            else:
                await session.commit()
            finally:
                await session.close()

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        from .models import Base

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise PersistError(f"Failed to initialize database: {e}", operation="initialize") from e

        logger.info(f"Database initialized with tables: {sorted(Base.metadata.tables.keys())}")

    async def close(self) -> None:
        """Close the database engine."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database engine closed")
