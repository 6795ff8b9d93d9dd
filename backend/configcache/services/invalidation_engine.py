"""
Write, read and invalidation orchestration for the configuration tree.

A write runs, in order: validation, the durable upsert, version minting,
node caching, metadata and back-edge recording, one-hop cascade
invalidation, full-snapshot invalidation and the update publish. All steps
after validation run inside the durable transaction, which is committed
only when every one of them succeeded. Cache and metadata effects are not
undone on rollback; the read path repairs them.

A read consults the full-snapshot cache and falls back to the durable
store, caching the reconstructed tree. Cache failures on the read path
only cost the cache; they never fail the read.

Between the snapshot invalidation and the commit a concurrent reader can
still rebuild the snapshot from the pre-commit rows. That stale snapshot
lives until the next write in the same tenant/config or its TTL expires.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from ..cache.manager import CacheManager, close_global_cache_manager, get_cache_manager
from ..cache.metadata import MetadataStore
from ..cache.node_cache import NodeCache
from ..database.config import close_database, get_database_config
from ..database.store import ValueStore
from ..exceptions import CacheError, PublishError, StoreError, ValidationError
from ..models.node import (
    DEFAULT_VERSION,
    UNKNOWN_ACTOR,
    CacheEntryModel,
    CachedNodeMetricsModel,
    CachedNodesReportModel,
    InvalidationPolicy,
    UpdateEventModel,
    WriteRequestModel,
    WriteResultModel,
)
from ..utils.config import AppConfig, get_config
from .event_bus import EventBus, UpdateBatcher
from .tree import Tree, build_tree
from .validation import validate_identifiers, validate_page, validate_path

logger = logging.getLogger(__name__)


class VersionMinter:
    """
    Mints ``v<milliseconds>`` version tokens.

    Tokens minted by one minter are strictly increasing, even when the
    clock stalls or steps backwards.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def mint(self) -> str:
        now_ms = int(self._clock() * 1000)
        with self._lock:
            self._last = max(now_ms, self._last + 1)
            return f"v{self._last}"


class InvalidationEngine:
    """
    Orchestrates the durable store, node cache, metadata store and event bus.

    Args:
        store: Durable value store
        node_cache: Node entries and full snapshots
        metadata: Versions and dependency edges
        event_bus: Update publisher
        policy: Which one-hop neighbours a write invalidates
        batcher: When given, update events are queued on it instead of published directly
    """

    def __init__(
        self,
        store: ValueStore,
        node_cache: NodeCache,
        metadata: MetadataStore,
        event_bus: EventBus,
        policy: InvalidationPolicy = InvalidationPolicy.DEPENDENCIES,
        batcher: Optional[UpdateBatcher] = None,
        minter: Optional[VersionMinter] = None,
    ):
        self.store = store
        self.node_cache = node_cache
        self.metadata = metadata
        self.event_bus = event_bus
        self.policy = InvalidationPolicy(policy)
        self.batcher = batcher
        self.minter = minter or VersionMinter()

    @classmethod
    def from_components(
        cls,
        store: ValueStore,
        cache_manager: CacheManager,
        policy: InvalidationPolicy = InvalidationPolicy.DEPENDENCIES,
        event_batch_interval_ms: int = 0,
        event_bus: Optional[EventBus] = None,
    ) -> "InvalidationEngine":
        """Wire an engine whose caches and event bus share one cache manager."""
        event_bus = event_bus or EventBus(cache_manager)
        batcher = UpdateBatcher(event_bus, event_batch_interval_ms) if event_batch_interval_ms > 0 else None
        return cls(
            store=store,
            node_cache=NodeCache(cache_manager),
            metadata=MetadataStore(cache_manager),
            event_bus=event_bus,
            policy=policy,
            batcher=batcher,
        )

    async def start(self) -> None:
        if self.batcher is not None:
            await self.batcher.start()

    async def close(self) -> None:
        """Flush batched updates and stop the event bus listener."""
        if self.batcher is not None:
            await self.batcher.stop()
        await self.event_bus.stop()

    # Writes

    async def write(
        self,
        tenant_id: str,
        config_id: str,
        path: str,
        value: str,
        dependencies: Optional[Sequence[str]] = None,
        actor_id: Optional[str] = None,
    ) -> WriteResultModel:
        """
        Store a value and invalidate everything the write makes stale.

        Raises:
            ValidationError: Bad identifiers, path, value or dependencies; nothing was touched
            StoreError: The durable write or commit failed; the transaction was rolled back
            CacheError: Caching or metadata recording failed; the transaction was rolled back
        """
        validate_identifiers(tenant_id, config_id)
        validate_path(path)
        if not isinstance(value, str):
            raise ValidationError("Value must be a string")
        dependencies = list(dependencies or [])
        if not all(isinstance(dep, str) and dep for dep in dependencies):
            raise ValidationError("Dependencies must be non-empty path strings")
        actor = actor_id or UNKNOWN_ACTOR

        try:
            async with self.store.transaction() as tx:
                await tx.upsert(tenant_id, config_id, path, value)
                version = self.minter.mint()
                await self.node_cache.put(tenant_id, config_id, path, value, version)
                await self.metadata.set_metadata(tenant_id, config_id, path, version, dependencies)
                invalidated = await self._cascade(tenant_id, config_id, path)
                await self.node_cache.delete_full_snapshot(tenant_id, config_id)
                published = await self._publish(
                    tenant_id, config_id, UpdateEventModel(path=path, version=version, actor_id=actor)
                )
        except (StoreError, CacheError) as e:
            logger.error(f"Write of {tenant_id}/{config_id}{path} rolled back: {e}")
            raise

        logger.info(f"Updated {tenant_id}/{config_id}{path} to {version} by {actor}")
        return WriteResultModel(path=path, version=version, invalidated=invalidated, published=published)

    async def handle_write(
        self, tenant_id: str, config_id: str, payload: Union[Dict[str, Any], WriteRequestModel]
    ) -> WriteResultModel:
        """
        Run a write from a request body ``{path, value, dependencies?, userId?}``.

        Raises:
            ValidationError: If the body does not have the expected shape
        """
        validate_identifiers(tenant_id, config_id)
        try:
            request = (
                payload if isinstance(payload, WriteRequestModel)
                else WriteRequestModel.model_validate(payload)
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid write request: {e}") from e

        return await self.write(
            tenant_id,
            config_id,
            request.path,
            request.value,
            dependencies=request.dependencies,
            actor_id=request.user_id,
        )

    async def invalidate(
        self, tenant_id: str, config_id: str, path: str, actor_id: Optional[str] = None
    ) -> List[str]:
        """
        Drop a node's cache entry and its one-hop neighbours' and announce it.

        Returns:
            Paths whose entries were dropped
        """
        validate_identifiers(tenant_id, config_id)
        validate_path(path)

        invalidated = await self._cascade(tenant_id, config_id, path)
        version = await self.metadata.get_version(tenant_id, config_id, path)
        await self._publish(
            tenant_id, config_id,
            UpdateEventModel(path=path, version=version, actor_id=actor_id or UNKNOWN_ACTOR),
        )
        return invalidated

    async def _cascade(self, tenant_id: str, config_id: str, path: str) -> List[str]:
        if self.policy is InvalidationPolicy.DEPENDENTS:
            neighbours = await self.metadata.get_dependents(tenant_id, config_id, path)
        else:
            neighbours = await self.metadata.get_dependencies(tenant_id, config_id, path)

        targets = list(dict.fromkeys([path, *neighbours]))
        await self.node_cache.delete(tenant_id, config_id, *targets)
        logger.debug(f"Invalidated {targets} in {tenant_id}/{config_id} ({self.policy.value})")
        return targets

    async def _publish(self, tenant_id: str, config_id: str, event: UpdateEventModel) -> bool:
        if self.batcher is not None:
            self.batcher.add(tenant_id, config_id, event)
            return True
        try:
            await self.event_bus.publish(tenant_id, config_id, [event])
            return True
        except PublishError as e:
            logger.warning(f"Update for {tenant_id}/{config_id}{event.path} not published: {e}")
            return False

    # Reads

    async def get(self, tenant_id: str, config_id: str, path: Optional[str] = None) -> Tree:
        """
        Return the config tree, optionally restricted to paths starting with ``path``.

        Raises:
            ValidationError: If the identifiers are not alphanumeric
            StoreError: If the tree had to be rebuilt and the store failed
        """
        validate_identifiers(tenant_id, config_id)
        prefix = path or None

        try:
            tree = await self.node_cache.get_full_snapshot(tenant_id, config_id, prefix)
        except CacheError as e:
            logger.warning(f"Snapshot lookup failed for {tenant_id}/{config_id}, reading from store: {e}")
            tree = None

        if tree is not None:
            return tree

        if prefix is None:
            rows = await self.store.query_all(tenant_id, config_id)
        else:
            rows = await self.store.query_prefix(tenant_id, config_id, prefix)
        tree = build_tree(rows)

        try:
            await self.node_cache.put_full_snapshot(tenant_id, config_id, tree, prefix)
        except CacheError as e:
            logger.warning(f"Could not cache snapshot for {tenant_id}/{config_id}: {e}")

        return tree

    async def get_node(self, tenant_id: str, config_id: str, path: str) -> Optional[CacheEntryModel]:
        """Value and version of a single node, or None when it was never written."""
        validate_identifiers(tenant_id, config_id)
        validate_path(path)

        try:
            entry = await self.node_cache.get(tenant_id, config_id, path)
        except CacheError as e:
            logger.warning(f"Node lookup failed for {tenant_id}/{config_id}{path}: {e}")
            entry = None
        if entry is not None:
            return entry

        value = await self.store.get_value(tenant_id, config_id, path)
        if value is None:
            return None

        try:
            version = await self.metadata.get_version(tenant_id, config_id, path)
            await self.node_cache.put(tenant_id, config_id, path, value, version)
        except CacheError as e:
            logger.warning(f"Could not repopulate {tenant_id}/{config_id}{path}: {e}")
            version = DEFAULT_VERSION

        return CacheEntryModel(value=value, version=version)

    async def list_cached_nodes(
        self, tenant_id: str, config_id: str, limit: int = 100, offset: int = 0
    ) -> CachedNodesReportModel:
        """
        Cached paths with metadata for one page of them.

        Set members whose entries have already expired are listed as well.

        Raises:
            ValidationError: Bad identifiers or negative limit/offset
            CacheError: If the cache cannot be read
        """
        validate_identifiers(tenant_id, config_id)
        validate_page(limit, offset)

        cached = await self.node_cache.cached_paths(tenant_id, config_id)
        page = cached[offset:offset + limit]
        metadata = await self.metadata.get_many(tenant_id, config_id, page)

        return CachedNodesReportModel(
            cached_nodes=cached,
            metrics=[CachedNodeMetricsModel(path=p, metadata=metadata[p]) for p in page],
            cache_stats=self.get_cache_stats(),
        )

    def get_cache_stats(self) -> Dict[str, int]:
        return self.node_cache.stats()

    async def health_check(self) -> Dict[str, Any]:
        cache_health = await self.node_cache.cache.health_check()
        database_ok = await self.store.db.test_connection()
        healthy = cache_health["status"] == "healthy" and database_ok
        return {
            "status": "healthy" if healthy else "unhealthy",
            "cache": cache_health,
            "cache_operations": await self.node_cache.cache.get_stats(),
            "database": {"available": database_ok, **self.store.db.get_connection_info()},
            "event_bus_running": self.event_bus.is_running,
            "reads": self.get_cache_stats(),
        }


# Global engine instance
_global_engine: Optional[InvalidationEngine] = None


async def get_invalidation_engine(config: Optional[AppConfig] = None) -> InvalidationEngine:
    """
    Get or create the process-wide engine from configuration.

    Raises:
        CacheError: If Valkey cannot be reached
        StoreError: If the database cannot be initialized
    """
    global _global_engine

    if _global_engine is None:
        config = config or get_config()
        cache_manager = await get_cache_manager(config=config.to_valkey_config())
        db_config = get_database_config(
            database_url=config.database_url, pool_timeout=config.db_pool_timeout_seconds
        )
        await db_config.initialize()

        engine = InvalidationEngine.from_components(
            store=ValueStore(db_config),
            cache_manager=cache_manager,
            policy=config.invalidation_policy,
            event_batch_interval_ms=config.event_batch_interval_ms,
        )
        await engine.start()
        _global_engine = engine
        logger.info(f"Invalidation engine ready (policy={config.invalidation_policy.value})")

    return _global_engine


async def close_global_invalidation_engine() -> None:
    """Close the global engine and the connections it owns."""
    global _global_engine

    if _global_engine is not None:
        await _global_engine.close()
        _global_engine = None
    await close_global_cache_manager()
    await close_database()
