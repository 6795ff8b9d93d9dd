"""
Caching layer for the configuration service.

This module contains Valkey client configuration, the retrying cache
manager, key conventions, and the node and metadata stores built on them.
"""

from .config import ValkeyConfig, ValkeyConnectionError, ValkeyTimeoutError
from .client import ValkeyClient, get_client, close_global_client
from .utils import (
    CacheKeyPrefix,
    TTLPreset,
    CacheKeyBuilder,
    key_builder
)
from .manager import CacheManager, CacheStats, get_cache_manager, close_global_cache_manager
from .node_cache import NodeCache
from .metadata import MetadataStore

__all__ = [
    # Configuration
    "ValkeyConfig",
    "ValkeyConnectionError",
    "ValkeyTimeoutError",

    # Client
    "ValkeyClient",
    "get_client",
    "close_global_client",

    # Manager
    "CacheManager",
    "CacheStats",
    "get_cache_manager",
    "close_global_cache_manager",

    # Stores
    "NodeCache",
    "MetadataStore",

    # Utilities
    "CacheKeyPrefix",
    "TTLPreset",
    "CacheKeyBuilder",
    "key_builder",
]
