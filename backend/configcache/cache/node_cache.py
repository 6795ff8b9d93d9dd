"""
Per-node cache entries and full-tree snapshots.

Node entries hold ``{value, version}`` under a fixed TTL. Every cached path
is also recorded in the tenant/config cached-node set, which is advisory:
members are never removed when their entry expires or is deleted, so a
member may point at an entry that no longer exists.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from .manager import CacheManager
from .utils import CacheKeyBuilder, TTLPreset
from ..models.node import CacheEntryModel

logger = logging.getLogger(__name__)


class NodeCache:
    """Valkey-backed cache of config nodes and reconstructed trees."""

    def __init__(self, cache_manager: CacheManager):
        self.cache = cache_manager
        self.keys = CacheKeyBuilder()
        self.hits = 0
        self.misses = 0

    async def put(self, tenant_id: str, config_id: str, path: str, value: str, version: Optional[str]) -> None:
        """
        Cache a node and register it in the cached-node set.

        Both commands go out in a single pipeline.

        Raises:
            CacheError: If the batch could not be sent
        """
        node_key = self.keys.node_key(tenant_id, config_id, path)
        entry = {"value": value, "version": version}
        serialized = json.dumps(entry)
        set_key = self.keys.cached_nodes_key(tenant_id, config_id)

        def build(pipe):
            pipe.setex(node_key, int(TTLPreset.NODE), serialized)
            pipe.sadd(set_key, path)

        await self.cache.execute_pipeline(build, key=node_key)
        logger.debug(f"Cached {node_key}")

    async def get(self, tenant_id: str, config_id: str, path: str) -> Optional[CacheEntryModel]:
        """Return the cached entry for a node, or None on a miss."""
        raw = await self.cache.get(self.keys.node_key(tenant_id, config_id, path))
        if not isinstance(raw, dict) or "value" not in raw:
            self._count(hit=False)
            return None
        self._count(hit=True)
        return CacheEntryModel(value=str(raw["value"]), version=raw.get("version"))

    async def delete(self, tenant_id: str, config_id: str, *paths: str) -> int:
        """
        Drop the entries of one or more nodes.

        Cached-node set membership is left untouched.

        Returns:
            Number of entries that existed and were removed
        """
        if not paths:
            return 0
        keys = [self.keys.node_key(tenant_id, config_id, path) for path in paths]
        removed = await self.cache.delete(*keys)
        logger.debug(f"Deleted {removed} of {len(keys)} node entries for {tenant_id}/{config_id}")
        return removed

    async def cached_paths(self, tenant_id: str, config_id: str) -> List[str]:
        """Members of the cached-node set, sorted for stable pagination."""
        return sorted(await self.cache.smembers(self.keys.cached_nodes_key(tenant_id, config_id)))

    async def get_full_snapshot(
        self, tenant_id: str, config_id: str, prefix: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        raw = await self.cache.get(self.keys.full_snapshot_key(tenant_id, config_id, prefix))
        tree = raw if isinstance(raw, dict) else None
        self._count(hit=tree is not None)
        return tree

    async def put_full_snapshot(
        self, tenant_id: str, config_id: str, tree: Dict[str, Any], prefix: Optional[str] = None
    ) -> None:
        key = self.keys.full_snapshot_key(tenant_id, config_id, prefix)
        await self.cache.set(key, tree, ttl=TTLPreset.FULL_SNAPSHOT)
        logger.debug(f"Cached snapshot {key}")

    async def delete_full_snapshot(self, tenant_id: str, config_id: str) -> int:
        """
        Drop the unscoped snapshot and every prefix-scoped snapshot.

        Returns:
            Number of snapshot keys removed
        """
        removed = await self.cache.delete(self.keys.full_snapshot_key(tenant_id, config_id))
        removed += await self.cache.delete_pattern(self.keys.full_snapshot_pattern(tenant_id, config_id))
        return removed

    def stats(self) -> Dict[str, int]:
        """Process-lifetime hit/miss counters of node and snapshot reads."""
        return {"hits": self.hits, "misses": self.misses}

    def _count(self, hit: bool) -> None:
        if hit:
            self.hits += 1
        else:
            self.misses += 1
