"""
Database package for the configuration service.

This package provides the SQLAlchemy model, async database configuration
and the durable value store.
"""

from .models import (
    Base,
    ConfigNode,
    create_all_tables
)

from .config import (
    DatabaseConfig,
    to_async_url,
    get_database_config,
    initialize_database,
    close_database
)

from .store import ValueStore, StoreTransaction

__all__ = [
    # Models
    'Base',
    'ConfigNode',
    'create_all_tables',

    # Configuration
    'DatabaseConfig',
    'to_async_url',
    'get_database_config',
    'initialize_database',
    'close_database',

    # Store
    'ValueStore',
    'StoreTransaction',
]
