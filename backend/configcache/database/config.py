"""
Database configuration and connection management for the configuration store.

This module provides RDBMS-agnostic async database configuration with support for:
- SQLite via aiosqlite (default, for local portability)
- PostgreSQL via asyncpg (production)

Configuration is loaded from environment variables with sensible defaults.
Includes connection pooling with bounded checkout timeouts, session
management, and error handling.
"""

import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ..exceptions import StoreError
from .models import create_all_tables

# Configure logging
logger = logging.getLogger(__name__)

_ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}


def to_async_url(database_url: str) -> str:
    """Rewrite a plain SQLite/PostgreSQL URL to use its asyncio driver."""
    for plain, async_prefix in _ASYNC_DRIVERS.items():
        if database_url.startswith(plain):
            return async_prefix + database_url[len(plain):]
    return database_url


class DatabaseConfig:
    """
    Database configuration manager supporting multiple RDBMS backends.

    Supports SQLite (default) and PostgreSQL with connection pooling and
    session management. Configuration is loaded from environment variables.
    """

    def __init__(self, database_url: Optional[str] = None, echo: bool = False, pool_timeout: Optional[float] = None):
        """
        Initialize database configuration.

        Args:
            database_url: Optional database URL override
            echo: Enable SQL query logging for debugging
            pool_timeout: Seconds to wait for a pooled connection
        """
        self.database_url = to_async_url(database_url or self._build_database_url())
        self.echo = echo
        self.pool_timeout = float(pool_timeout if pool_timeout is not None else os.getenv('DB_POOL_TIMEOUT', '5'))
        self.engine: Optional[AsyncEngine] = None
        self.SessionLocal: Optional[async_sessionmaker] = None
        self._is_initialized = False

        self.db_type = self._detect_database_type()
        self.engine_kwargs = self._get_engine_kwargs()

        logger.info(f"Database configuration initialized for {self.db_type}")

    def _build_database_url(self) -> str:
        """
        Build database URL from environment variables.

        Environment variables:
        - DATABASE_URL: Complete database URL (takes precedence)
        - DB_TYPE: Database type (sqlite, postgresql)
        - DB_HOST: Database host (default: localhost)
        - DB_PORT: Database port (default: 5432)
        - DB_NAME: Database name (default: configs)
        - DB_USER: Database username
        - DB_PASSWORD: Database password

        Returns:
            Complete database URL string
        """
        database_url = os.getenv('DATABASE_URL')
        if database_url:
            return database_url

        db_type = os.getenv('DB_TYPE', 'sqlite').lower()

        if db_type == 'sqlite':
            db_name = os.getenv('DB_NAME', 'configcache.db')
            db_path = Path(__file__).parent.parent / db_name
            return f"sqlite+aiosqlite:///{db_path}"

        elif db_type in ['postgresql', 'postgres']:
            host = os.getenv('DB_HOST', 'localhost')
            port = os.getenv('DB_PORT', '5432')
            database = os.getenv('DB_NAME', 'configs')
            username = os.getenv('DB_USER', 'postgres')
            password = os.getenv('DB_PASSWORD', '')

            return f"postgresql+asyncpg://{username}:{password}@{host}:{port}/{database}"

        else:
            raise ValueError(f"Unsupported database type: {db_type}")

    def _detect_database_type(self) -> str:
        """Detect database type from URL."""
        if self.database_url.startswith('sqlite'):
            return 'sqlite'
        elif self.database_url.startswith('postgresql'):
            return 'postgresql'
        else:
            return 'unknown'

    @property
    def is_memory_database(self) -> bool:
        return self.db_type == 'sqlite' and (':memory:' in self.database_url or self.database_url.endswith(':///'))

    def _get_engine_kwargs(self) -> Dict[str, Any]:
        """
        Get database-specific engine configuration.

        Returns:
            Dictionary of engine configuration parameters
        """
        kwargs: Dict[str, Any] = {
            'echo': self.echo,
            'pool_pre_ping': True,  # Verify connections before use
        }

        if self.db_type == 'sqlite':
            kwargs['connect_args'] = {
                'timeout': self.pool_timeout,  # Busy timeout while another writer holds the lock
            }
            if self.is_memory_database:
                # One shared connection, otherwise every checkout sees an empty database
                kwargs['poolclass'] = StaticPool

        elif self.db_type == 'postgresql':
            kwargs.update({
                'pool_size': int(os.getenv('DB_POOL_SIZE', '20')),
                'max_overflow': int(os.getenv('DB_MAX_OVERFLOW', '10')),
                'pool_timeout': self.pool_timeout,
                'pool_recycle': int(os.getenv('DB_POOL_RECYCLE', '3600')),  # 1 hour
                'connect_args': {'timeout': self.pool_timeout},
            })

        return kwargs

    async def initialize(self) -> None:
        """
        Initialize database engine and session factory.

        Raises:
            StoreError: If database connection fails
        """
        if self._is_initialized:
            return

        try:
            self.engine = create_async_engine(self.database_url, **self.engine_kwargs)
            self._setup_event_listeners()

            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

            self.SessionLocal = async_sessionmaker(
                bind=self.engine,
                autoflush=False,
                expire_on_commit=False  # Keep objects accessible after commit
            )

            self._is_initialized = True
            logger.info(f"Database engine initialized successfully ({self.db_type})")

        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StoreError(f"Database initialization failed: {e}") from e

    def _setup_event_listeners(self) -> None:
        """Set up SQLAlchemy event listeners for connection management."""

        @event.listens_for(self.engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Configure SQLite-specific settings."""
            if self.db_type == 'sqlite' and not self.is_memory_database:
                cursor = dbapi_connection.cursor()
                # Set journal mode for better concurrency
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.close()

        @event.listens_for(self.engine.sync_engine, "engine_connect")
        def receive_engine_connect(conn):
            """Log successful connections."""
            logger.debug("Database connection established")

    async def create_tables(self) -> None:
        """
        Create all database tables if they don't exist.

        Raises:
            StoreError: If table creation fails
        """
        if not self._is_initialized:
            await self.initialize()

        try:
            await create_all_tables(self.engine)
            logger.info("Database tables created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create tables: {e}")
            raise StoreError(f"Table creation failed: {e}") from e

    async def get_session(self) -> AsyncSession:
        """
        Get a new database session.

        Raises:
            StoreError: If the engine cannot be initialized
        """
        if not self._is_initialized:
            await self.initialize()

        return self.SessionLocal()

    async def test_connection(self) -> bool:
        """
        Test database connectivity.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._is_initialized:
                await self.initialize()

            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, StoreError, OSError) as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    def get_connection_info(self) -> Dict[str, Any]:
        """
        Get database connection information for monitoring.

        Returns:
            Dictionary with connection details
        """
        info = {
            'database_type': self.db_type,
            'database_url': self.database_url.split('@')[-1] if '@' in self.database_url else self.database_url,
            'is_initialized': self._is_initialized,
            'echo_enabled': self.echo,
            'pool_timeout': self.pool_timeout,
        }

        pool = self.engine.pool if self.engine else None
        if pool is not None and hasattr(pool, 'size'):
            info.update({
                'pool_size': pool.size(),
                'checked_in': pool.checkedin(),
                'checked_out': pool.checkedout(),
            })

        return info

    async def close(self) -> None:
        """Close database connections and clean up resources."""
        if self.engine:
            await self.engine.dispose()
            self._is_initialized = False
            logger.info("Database connections closed")


# Global database configuration instance
_db_config: Optional[DatabaseConfig] = None


def get_database_config(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_timeout: Optional[float] = None
) -> DatabaseConfig:
    """
    Get or create the global database configuration instance.

    Args:
        database_url: Optional database URL override
        echo: Enable SQL query logging
        pool_timeout: Seconds to wait for a pooled connection

    Returns:
        DatabaseConfig instance
    """
    global _db_config

    if _db_config is None:
        _db_config = DatabaseConfig(database_url=database_url, echo=echo, pool_timeout=pool_timeout)

    return _db_config


async def initialize_database(
    database_url: Optional[str] = None,
    echo: bool = False,
    create_tables: bool = True
) -> DatabaseConfig:
    """
    Initialize the database and optionally create its tables.

    Args:
        database_url: Optional database URL override
        echo: Enable SQL query logging
        create_tables: Whether to create tables automatically

    Returns:
        Initialized DatabaseConfig instance
    """
    db_config = get_database_config(database_url=database_url, echo=echo)
    await db_config.initialize()

    if create_tables:
        await db_config.create_tables()

    return db_config


async def close_database() -> None:
    """Dispose the global database configuration."""
    global _db_config

    if _db_config is not None:
        await _db_config.close()
        _db_config = None


# Export public interface
__all__ = [
    'DatabaseConfig',
    'to_async_url',
    'get_database_config',
    'initialize_database',
    'close_database',
]
