"""
Cache utilities for key naming conventions and TTL management.

Key layouts are shared with existing cache contents and other consumers of
the same Valkey instance, so they must not change:

    tenant:{tenant}:config:{config}:node:{path}
    tenant:{tenant}:config:{config}:cached_nodes
    tenant:{tenant}:config:{config}:metadata:{path}
    tenant:{tenant}:config:{config}:full[:{path}]
    config_updates:{tenant}:{config}
"""

from enum import Enum
from typing import Any, Optional, Tuple, Union


class CacheKeyPrefix(str, Enum):
    """Standard cache key segments for the configuration namespace."""

    TENANT = "tenant"
    CONFIG = "config"
    NODE = "node"
    CACHED_NODES = "cached_nodes"
    METADATA = "metadata"
    FULL_SNAPSHOT = "full"
    UPDATES_CHANNEL = "config_updates"


class TTLPreset(int, Enum):
    """Fixed TTL policy in seconds."""

    NODE = 3600             # 1 hour
    FULL_SNAPSHOT = 3600    # 1 hour


class CacheKeyBuilder:
    """
    Builder class for generating consistent cache keys.

    Paths are appended verbatim, including their leading slash, so that
    ``/settings/theme`` becomes ``...:node:/settings/theme``.
    """

    @staticmethod
    def build_key(prefix: Union[CacheKeyPrefix, str], *parts: Any) -> str:
        """
        Build a cache key with prefix and parts joined by colons.

        Example:
            build_key(CacheKeyPrefix.TENANT, "T1", "config", "C1")
            # Returns: "tenant:T1:config:C1"
        """
        prefix_str = prefix.value if isinstance(prefix, CacheKeyPrefix) else str(prefix)
        key_parts = [prefix_str]

        for part in parts:
            if part is None:
                continue
            key_parts.append(part.value if isinstance(part, CacheKeyPrefix) else str(part))

        return ":".join(key_parts)

    @classmethod
    def scope_key(cls, tenant_id: str, config_id: str) -> str:
        """Key prefix shared by every entry of one tenant/config pair."""
        return cls.build_key(CacheKeyPrefix.TENANT, tenant_id, CacheKeyPrefix.CONFIG, config_id)

    @classmethod
    def node_key(cls, tenant_id: str, config_id: str, path: str) -> str:
        return cls.build_key(cls.scope_key(tenant_id, config_id), CacheKeyPrefix.NODE, path)

    @classmethod
    def cached_nodes_key(cls, tenant_id: str, config_id: str) -> str:
        return cls.build_key(cls.scope_key(tenant_id, config_id), CacheKeyPrefix.CACHED_NODES)

    @classmethod
    def metadata_key(cls, tenant_id: str, config_id: str, path: str) -> str:
        return cls.build_key(cls.scope_key(tenant_id, config_id), CacheKeyPrefix.METADATA, path)

    @classmethod
    def full_snapshot_key(cls, tenant_id: str, config_id: str, prefix: Optional[str] = None) -> str:
        """Snapshot key, suffixed with the path filter when the snapshot is prefix-scoped."""
        return cls.build_key(
            cls.scope_key(tenant_id, config_id),
            CacheKeyPrefix.FULL_SNAPSHOT,
            prefix or None,
        )

    @classmethod
    def full_snapshot_pattern(cls, tenant_id: str, config_id: str) -> str:
        """SCAN pattern matching every prefix-scoped snapshot of a tenant/config."""
        return cls.build_key(cls.full_snapshot_key(tenant_id, config_id), "*")

    @classmethod
    def updates_channel(cls, tenant_id: str, config_id: str) -> str:
        return cls.build_key(CacheKeyPrefix.UPDATES_CHANNEL, tenant_id, config_id)

    @classmethod
    def updates_channel_pattern(cls) -> str:
        return cls.build_key(CacheKeyPrefix.UPDATES_CHANNEL, "*")

    @staticmethod
    def parse_updates_channel(channel: str) -> Tuple[str, str]:
        """
        Split an updates channel name into its tenant and config identifiers.

        Raises:
            ValueError: If the channel does not follow the updates naming scheme
        """
        parts = channel.split(":")
        if len(parts) != 3 or parts[0] != CacheKeyPrefix.UPDATES_CHANNEL.value:
            raise ValueError(f"Not an updates channel: {channel}")
        return parts[1], parts[2]


# Global key builder instance
key_builder = CacheKeyBuilder()
