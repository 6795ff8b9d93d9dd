"""
Per-node metadata: version and dependency edges.

Each node owns a Valkey hash with ``version``, ``dependencies``,
``dependents`` and ``updated_at``. List fields are JSON arrays so other
consumers of the same keys can read them.

Back-edges are maintained at write time only. Adding a dependent is a
read-modify-write on the dependency's hash; two writers adding different
dependents to the same dependency at the same moment may lose one of the
additions. Dependents are never pruned.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from .manager import CacheManager
from .utils import CacheKeyBuilder
from ..models.node import DEFAULT_VERSION, NodeMetadataModel, parse_path_list

logger = logging.getLogger(__name__)


class MetadataStore:
    """Valkey hash store for node versions and dependency edges."""

    def __init__(self, cache_manager: CacheManager):
        self.cache = cache_manager
        self.keys = CacheKeyBuilder()

    async def set_metadata(
        self,
        tenant_id: str,
        config_id: str,
        path: str,
        version: str,
        dependencies: Sequence[str],
    ) -> None:
        """
        Record a node's version and dependencies and link the back-edges.

        The node's own ``dependents`` field is left as it is.

        Raises:
            CacheError: If any hash update fails
        """
        metadata_key = self.keys.metadata_key(tenant_id, config_id, path)
        dependencies = list(dependencies)

        await self.cache.hset(metadata_key, mapping={
            "version": version,
            "dependencies": json.dumps(dependencies),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })

        for dep in dict.fromkeys(dependencies):
            await self._add_dependent(tenant_id, config_id, dep, path)

        logger.debug(f"Updated metadata for {metadata_key} ({len(dependencies)} dependencies)")

    async def _add_dependent(self, tenant_id: str, config_id: str, dependency: str, dependent: str) -> None:
        dep_key = self.keys.metadata_key(tenant_id, config_id, dependency)
        # Read immediately before writing; other writers may have changed it since the last await.
        current = parse_path_list(await self.cache.hget(dep_key, "dependents"))
        if dependent in current:
            return
        current.append(dependent)
        await self.cache.hset(dep_key, "dependents", json.dumps(current))
        logger.debug(f"Linked {dependent} as dependent of {dependency}")

    async def get_metadata(self, tenant_id: str, config_id: str, path: str) -> Optional[NodeMetadataModel]:
        fields = await self.cache.hgetall(self.keys.metadata_key(tenant_id, config_id, path))
        if not fields:
            return None
        return NodeMetadataModel.from_hash(fields)

    async def get_many(
        self, tenant_id: str, config_id: str, paths: Sequence[str]
    ) -> Dict[str, NodeMetadataModel]:
        """Fetch metadata for several nodes in one pipeline; absent nodes get defaults."""
        if not paths:
            return {}
        keys = [self.keys.metadata_key(tenant_id, config_id, path) for path in paths]

        def build(pipe):
            for key in keys:
                pipe.hgetall(key)

        results = await self.cache.execute_pipeline(build, transaction=False, key=keys[0])
        return {
            path: NodeMetadataModel.from_hash(fields or {})
            for path, fields in zip(paths, results)
        }

    async def get_dependencies(self, tenant_id: str, config_id: str, path: str) -> List[str]:
        raw = await self.cache.hget(self.keys.metadata_key(tenant_id, config_id, path), "dependencies")
        return parse_path_list(raw)

    async def get_dependents(self, tenant_id: str, config_id: str, path: str) -> List[str]:
        raw = await self.cache.hget(self.keys.metadata_key(tenant_id, config_id, path), "dependents")
        return parse_path_list(raw)

    async def get_version(self, tenant_id: str, config_id: str, path: str) -> str:
        """Current version of a node, ``v1`` when it has no metadata."""
        version = await self.cache.hget(self.keys.metadata_key(tenant_id, config_id, path), "version")
        return version or DEFAULT_VERSION
