"""
Cache manager with retries, circuit breaking and operation statistics.

This module provides a high-level cache abstraction layer that wraps
Valkey operations with bounded retries, exponential backoff, a circuit
breaker and performance monitoring. Every failure that survives the retry
budget surfaces as ``CacheError``; callers decide whether that is fatal.
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar, Union
from datetime import datetime
from dataclasses import dataclass, field

from valkey.exceptions import ConnectionError, TimeoutError, ValkeyError

from ..exceptions import CacheError
from .client import ValkeyClient
from .config import ValkeyConfig, ValkeyConnectionError, ValkeyTimeoutError
from .utils import TTLPreset

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheStats:
    """Cache operation statistics, kept for the lifetime of the process."""

    hit_count: int = 0
    miss_count: int = 0
    error_count: int = 0
    set_count: int = 0
    delete_count: int = 0
    retry_count: int = 0
    total_operations: int = 0

    # Performance metrics
    total_response_time_ms: float = 0.0
    min_response_time_ms: float = float('inf')
    max_response_time_ms: float = 0.0

    # Error tracking
    connection_errors: int = 0
    timeout_errors: int = 0
    other_errors: int = 0

    # Operations rejected while the circuit breaker was open
    degraded_operations: int = 0

    start_time: datetime = field(default_factory=datetime.now)

    @property
    def hit_ratio(self) -> float:
        """Calculate cache hit ratio."""
        total_reads = self.hit_count + self.miss_count
        return self.hit_count / total_reads if total_reads > 0 else 0.0

    @property
    def error_ratio(self) -> float:
        """Calculate error ratio."""
        return self.error_count / self.total_operations if self.total_operations > 0 else 0.0

    @property
    def avg_response_time_ms(self) -> float:
        """Calculate average response time."""
        return (self.total_response_time_ms / self.total_operations
                if self.total_operations > 0 else 0.0)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now() - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "hit_count": self.hit_count,
            "miss_count": self.miss_count,
            "error_count": self.error_count,
            "set_count": self.set_count,
            "delete_count": self.delete_count,
            "retry_count": self.retry_count,
            "total_operations": self.total_operations,
            "hit_ratio": self.hit_ratio,
            "error_ratio": self.error_ratio,
            "avg_response_time_ms": self.avg_response_time_ms,
            "min_response_time_ms": self.min_response_time_ms if self.min_response_time_ms != float('inf') else 0.0,
            "max_response_time_ms": self.max_response_time_ms,
            "connection_errors": self.connection_errors,
            "timeout_errors": self.timeout_errors,
            "other_errors": self.other_errors,
            "degraded_operations": self.degraded_operations,
            "uptime_seconds": self.uptime_seconds,
        }


class CacheManager:
    """
    High-level cache manager with error handling and statistics.

    Features:
    - Bounded retries with exponential backoff per operation
    - Circuit breaker that fails fast while Valkey is down
    - JSON serialization for structured values
    - Hit/miss and latency statistics
    - Atomic multi-command batches via pipelines
    """

    def __init__(
        self,
        client: Optional[ValkeyClient] = None,
        config: Optional[ValkeyConfig] = None,
        max_retries: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: int = 60
    ):
        """
        Initialize cache manager.

        Args:
            client: ValkeyClient instance
            config: ValkeyConfig for creating new client
            max_retries: Retries after the first failed attempt (defaults to config)
            retry_backoff_seconds: Base delay, doubled on every retry (defaults to config)
            circuit_breaker_threshold: Consecutive failures before circuit opens
            circuit_breaker_timeout: Seconds to wait before retrying after circuit opens
        """
        self.client = client
        self.config = config or (client.config if client else ValkeyConfig.from_env())
        self.max_retries = self.config.max_retries if max_retries is None else max_retries
        self.retry_backoff_seconds = (
            self.config.retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds
        )

        self.stats = CacheStats()

        self.circuit_breaker_threshold = circuit_breaker_threshold
        self.circuit_breaker_timeout = circuit_breaker_timeout
        self.consecutive_failures = 0
        self.circuit_open_time: Optional[datetime] = None
        self.is_circuit_open = False

        logger.info("CacheManager initialized (max_retries=%s)", self.max_retries)

    async def initialize(self) -> None:
        """
        Initialize the cache manager and establish connections.

        Raises:
            ValkeyConnectionError: If Valkey cannot be reached
        """
        if not self.client:
            from .client import get_client
            self.client = await get_client(self.config)

        await self.client.ensure_connection()
        logger.info("CacheManager successfully connected to Valkey")

    def _record_operation(self, operation_type: str, response_time_ms: float) -> None:
        """Record operation statistics."""
        self.stats.total_operations += 1
        self.stats.total_response_time_ms += response_time_ms

        if response_time_ms < self.stats.min_response_time_ms:
            self.stats.min_response_time_ms = response_time_ms
        if response_time_ms > self.stats.max_response_time_ms:
            self.stats.max_response_time_ms = response_time_ms

        if operation_type == "set":
            self.stats.set_count += 1
        elif operation_type == "delete":
            self.stats.delete_count += 1

    def _record_error(self, error: Exception) -> None:
        """Record and categorize errors."""
        self.stats.error_count += 1
        self.consecutive_failures += 1

        if isinstance(error, (ConnectionError, ValkeyConnectionError)):
            self.stats.connection_errors += 1
        elif isinstance(error, TimeoutError):
            self.stats.timeout_errors += 1
        else:
            self.stats.other_errors += 1

        if self.consecutive_failures >= self.circuit_breaker_threshold:
            self.is_circuit_open = True
            self.circuit_open_time = datetime.now()
            logger.warning(
                f"Circuit breaker opened after {self.consecutive_failures} consecutive failures"
            )

    def _record_success(self) -> None:
        """Record successful operation."""
        self.consecutive_failures = 0

        if self.is_circuit_open:
            self.is_circuit_open = False
            self.circuit_open_time = None
            logger.info("Circuit breaker closed after successful operation")

    def _is_circuit_breaker_open(self) -> bool:
        """Check if circuit breaker should remain open."""
        if not self.is_circuit_open:
            return False

        if self.circuit_open_time is None:
            return False

        elapsed = (datetime.now() - self.circuit_open_time).total_seconds()
        if elapsed >= self.circuit_breaker_timeout:
            logger.info("Circuit breaker timeout expired, allowing retry")
            return False

        return True

    async def _execute(
        self,
        operation_type: str,
        operation: Callable[[Any], Awaitable[T]],
        key: Optional[str] = None
    ) -> T:
        """
        Execute a Valkey operation with retries and circuit breaking.

        Args:
            operation_type: Name used for statistics and error messages
            operation: Coroutine function receiving the raw Valkey client
            key: Cache key for diagnostics

        Returns:
            Result of the operation

        Raises:
            CacheError: If the circuit is open or every attempt failed
            ValkeyTimeoutError: If the last attempt timed out
        """
        if self.client is None:
            raise CacheError("No Valkey client configured")

        if self._is_circuit_breaker_open():
            self.stats.degraded_operations += 1
            raise CacheError(f"Cache circuit breaker is open; {operation_type} on {key or '-'} rejected")

        attempts = self.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            start_time = time.perf_counter()
            try:
                await self.client.ensure_connection()
                result = await operation(self.client.client)
                self._record_operation(operation_type, (time.perf_counter() - start_time) * 1000)
                self._record_success()
                return result

            except (ValkeyError, ValkeyConnectionError, OSError) as e:
                last_error = e
                self._record_error(e)
                logger.debug(f"Cache {operation_type} failed for key {key} (attempt {attempt + 1}/{attempts}): {e}")

                if attempt + 1 < attempts:
                    self.stats.retry_count += 1
                    await asyncio.sleep(self.retry_backoff_seconds * (2 ** attempt))

        logger.warning(f"Cache {operation_type} failed for key {key} after {attempts} attempts: {last_error}")
        error_class = ValkeyTimeoutError if isinstance(last_error, TimeoutError) else CacheError
        raise error_class(
            f"Cache {operation_type} failed for key {key} after {attempts} attempts: {last_error}"
        ) from last_error

    @staticmethod
    def _serialize(value: Any) -> str:
        if isinstance(value, (dict, list, tuple)):
            return json.dumps(value)
        return str(value)

    @staticmethod
    def _deserialize(raw: Any) -> Any:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return raw

    async def get(self, key: str) -> Any:
        """
        Get a value from cache, decoding JSON payloads.

        Returns:
            Cached value, or None on a miss
        """
        async def cache_operation(client):
            return await client.get(key)

        result = await self._execute("get", cache_operation, key)
        if result is None:
            self.stats.miss_count += 1
            return None

        self.stats.hit_count += 1
        return self._deserialize(result)

    async def set(self, key: str, value: Any, ttl: Optional[Union[int, TTLPreset]] = None) -> bool:
        """
        Set value in cache with an optional TTL.

        Args:
            key: Cache key
            value: Value to cache; dicts and lists are stored as JSON
            ttl: Time to live in seconds or TTLPreset

        Returns:
            True if Valkey acknowledged the write
        """
        serialized_value = self._serialize(value)

        async def cache_operation(client):
            if ttl:
                return await client.setex(key, int(ttl), serialized_value)
            return await client.set(key, serialized_value)

        return bool(await self._execute("set", cache_operation, key))

    async def delete(self, *keys: str) -> int:
        """
        Delete keys from cache.

        Returns:
            Number of keys removed
        """
        if not keys:
            return 0

        async def cache_operation(client):
            return await client.delete(*keys)

        return int(await self._execute("delete", cache_operation, keys[0]) or 0)

    async def sadd(self, key: str, *members: str) -> int:
        async def cache_operation(client):
            return await client.sadd(key, *members)

        return int(await self._execute("sadd", cache_operation, key) or 0)

    async def smembers(self, key: str) -> Set[str]:
        async def cache_operation(client):
            return await client.smembers(key)

        return set(await self._execute("smembers", cache_operation, key) or ())

    async def hget(self, key: str, field_name: str) -> Optional[str]:
        async def cache_operation(client):
            return await client.hget(key, field_name)

        return await self._execute("hget", cache_operation, key)

    async def hset(
        self,
        key: str,
        field_name: Optional[str] = None,
        value: Optional[Any] = None,
        mapping: Optional[Dict[str, Any]] = None
    ) -> int:
        """Set one hash field, or several at once through ``mapping``."""
        async def cache_operation(client):
            return await client.hset(key, field_name, value, mapping=mapping)

        return int(await self._execute("hset", cache_operation, key) or 0)

    async def hgetall(self, key: str) -> Dict[str, str]:
        async def cache_operation(client):
            return await client.hgetall(key)

        return dict(await self._execute("hgetall", cache_operation, key) or {})

    async def scan_keys(self, pattern: str) -> List[str]:
        """
        Collect all keys matching a glob-style pattern using SCAN.

        Args:
            pattern: Key pattern (supports wildcards)
        """
        async def cache_operation(client):
            return [key async for key in client.scan_iter(match=pattern)]

        return await self._execute("scan", cache_operation, pattern)

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching pattern.

        Returns:
            Number of keys deleted
        """
        keys = await self.scan_keys(pattern)
        if not keys:
            return 0
        return await self.delete(*keys)

    async def execute_pipeline(
        self,
        build: Callable[[Any], None],
        transaction: bool = True,
        key: Optional[str] = None
    ) -> List[Any]:
        """
        Queue commands on a pipeline and send them as one batch.

        The ``build`` callable receives the pipeline and queues commands on
        it; it is invoked again on every retry.

        Returns:
            List of per-command results in queue order
        """
        async def cache_operation(client):
            async with client.pipeline(transaction=transaction) as pipe:
                build(pipe)
                return await pipe.execute()

        return await self._execute("pipeline", cache_operation, key)

    async def publish(self, channel: str, message: Any) -> int:
        """
        Publish a message on a Pub/Sub channel.

        Returns:
            Number of Valkey subscribers that received the message
        """
        payload = self._serialize(message)

        async def cache_operation(client):
            return await client.publish(channel, payload)

        return int(await self._execute("publish", cache_operation, channel) or 0)

    async def pubsub(self):
        """
        Create a Pub/Sub handle on the underlying connection pool.

        Raises:
            CacheError: If Valkey is not reachable
        """
        if self.client is None:
            raise CacheError("No Valkey client configured")
        await self.client.ensure_connection()
        return self.client.client.pubsub()

    async def get_stats(self) -> Dict[str, Any]:
        """
        Get cache manager statistics.

        Returns:
            Dict containing performance and error statistics
        """
        stats = self.stats.to_dict()

        stats.update({
            "circuit_breaker_open": self.is_circuit_open,
            "consecutive_failures": self.consecutive_failures,
        })

        if self.client:
            try:
                stats["connection_info"] = await self.client.get_connection_info()
            except Exception as e:
                stats["connection_error"] = str(e)

        return stats

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform comprehensive health check.

        Returns:
            Dict containing health status and diagnostics
        """
        health = {
            "status": "unknown",
            "cache_available": False,
            "circuit_breaker_open": self.is_circuit_open,
            "errors": [],
        }

        if not self.client:
            health.update({
                "status": "unhealthy",
                "errors": ["No Valkey client available"],
            })
            return health

        try:
            test_key = "health_check_test"
            await self.set(test_key, {"timestamp": datetime.now().isoformat()}, ttl=60)
            retrieved = await self.get(test_key)
            await self.delete(test_key)

            if retrieved:
                health.update({"status": "healthy", "cache_available": True})
            else:
                health.update({
                    "status": "degraded",
                    "errors": ["Cache operations not working properly"],
                })

        except CacheError as e:
            health.update({"status": "unhealthy", "errors": [str(e)]})

        return health

    async def close(self) -> None:
        """Close cache manager and cleanup resources."""
        if self.client:
            await self.client.disconnect()

        logger.info("CacheManager closed")


# Global cache manager instance
_global_cache_manager: Optional[CacheManager] = None


async def get_cache_manager(
    client: Optional[ValkeyClient] = None,
    config: Optional[ValkeyConfig] = None,
    **kwargs
) -> CacheManager:
    """
    Get or create global cache manager instance.

    Args:
        client: Optional ValkeyClient instance
        config: Optional ValkeyConfig
        **kwargs: Additional CacheManager arguments

    Returns:
        CacheManager: Global cache manager instance
    """
    global _global_cache_manager

    if _global_cache_manager is None:
        _global_cache_manager = CacheManager(client=client, config=config, **kwargs)
        await _global_cache_manager.initialize()

    return _global_cache_manager


async def close_global_cache_manager() -> None:
    """Close the global cache manager."""
    global _global_cache_manager

    if _global_cache_manager:
        await _global_cache_manager.close()
        _global_cache_manager = None
