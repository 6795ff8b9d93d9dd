"""
Shared fixtures: an in-memory stand-in for the valkey.asyncio client and a
temporary SQLite value store.
"""

import asyncio
import fnmatch
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import pytest
import pytest_asyncio
from valkey.exceptions import ConnectionError as ValkeyConnectionFailure

# Add the backend directory to the path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from configcache.cache.client import ValkeyClient
from configcache.cache.config import ValkeyConfig
from configcache.cache.manager import CacheManager
from configcache.cache.metadata import MetadataStore
from configcache.cache.node_cache import NodeCache
from configcache.database.config import DatabaseConfig
from configcache.database.store import ValueStore
from configcache.services.event_bus import EventBus
from configcache.services.invalidation_engine import InvalidationEngine


class FakePubSub:
    """Pattern subscriptions fed by FakeValkey.publish."""

    def __init__(self, server: "FakeValkey"):
        self.server = server
        self.patterns: List[str] = []
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def psubscribe(self, *patterns: str) -> None:
        self.patterns.extend(patterns)
        self.server.pubsubs.append(self)
        for pattern in patterns:
            self.queue.put_nowait({"type": "psubscribe", "pattern": None, "channel": pattern, "data": 1})

    async def listen(self):
        while not self.closed:
            yield await self.queue.get()

    async def aclose(self) -> None:
        self.closed = True
        if self in self.server.pubsubs:
            self.server.pubsubs.remove(self)


class FakePipeline:
    """Queues commands and applies them in order on execute()."""

    def __init__(self, server: "FakeValkey", transaction: bool):
        self.server = server
        self.transaction = transaction
        self.commands: List[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.commands = []

    def __getattr__(self, name: str):
        if name.startswith("_") or not hasattr(FakeValkey, name):
            raise AttributeError(name)

        def queue(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> List[Any]:
        self.server.check("pipeline")
        self.server.pipelines.append({"transaction": self.transaction, "commands": list(self.commands)})
        results = []
        for name, args, kwargs in self.commands:
            results.append(await getattr(self.server, name)(*args, **kwargs))
        self.commands = []
        return results


class FakeValkey:
    """
    In-memory subset of the valkey.asyncio client API used by the cache layer.

    Commands listed in ``failing`` raise a valkey ConnectionError, which lets
    tests exercise retry and error paths without a server.
    """

    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.ttls: Dict[str, int] = {}
        self.published: List[tuple] = []
        self.pipelines: List[Dict[str, Any]] = []
        self.pubsubs: List[FakePubSub] = []
        self.failing: Set[str] = set()
        self.calls: List[str] = []

    def check(self, command: str) -> None:
        self.calls.append(command)
        if command in self.failing:
            raise ValkeyConnectionFailure(f"{command} failed")

    def _all_keys(self) -> List[str]:
        return list(self.strings) + list(self.sets) + list(self.hashes)

    async def ping(self) -> bool:
        return True

    async def info(self) -> Dict[str, Any]:
        return {"valkey_version": "8.0.0", "connected_clients": 1}

    async def aclose(self) -> None:
        pass

    async def get(self, key: str) -> Optional[str]:
        self.check("get")
        return self.strings.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.check("set")
        self.strings[key] = value
        self.ttls.pop(key, None)
        return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.check("setex")
        self.strings[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        self.check("delete")
        removed = 0
        for key in keys:
            for store in (self.strings, self.sets, self.hashes):
                if key in store:
                    del store[key]
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    async def sadd(self, key: str, *members: str) -> int:
        self.check("sadd")
        current = self.sets.setdefault(key, set())
        added = len(set(members) - current)
        current.update(members)
        return added

    async def smembers(self, key: str) -> Set[str]:
        self.check("smembers")
        return set(self.sets.get(key, set()))

    async def hget(self, name: str, key: str) -> Optional[str]:
        self.check("hget")
        return self.hashes.get(name, {}).get(key)

    async def hset(self, name: str, key: Optional[str] = None, value: Any = None,
                   mapping: Optional[Dict[str, Any]] = None) -> int:
        self.check("hset")
        fields = dict(mapping or {})
        if key is not None:
            fields[key] = value
        current = self.hashes.setdefault(name, {})
        added = len([k for k in fields if k not in current])
        current.update({k: str(v) for k, v in fields.items()})
        return added

    async def hgetall(self, name: str) -> Dict[str, str]:
        self.check("hgetall")
        return dict(self.hashes.get(name, {}))

    async def scan_iter(self, match: Optional[str] = None):
        self.check("scan")
        for key in self._all_keys():
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def publish(self, channel: str, message: str) -> int:
        self.check("publish")
        self.published.append((channel, message))
        receivers = 0
        for pubsub in list(self.pubsubs):
            for pattern in pubsub.patterns:
                if fnmatch.fnmatchcase(channel, pattern):
                    pubsub.queue.put_nowait({
                        "type": "pmessage", "pattern": pattern, "channel": channel, "data": message,
                    })
                    receivers += 1
        return receivers

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self, transaction)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)


@pytest.fixture
def fake_valkey():
    return FakeValkey()


@pytest_asyncio.fixture
async def cache_manager(fake_valkey):
    """CacheManager wired to the in-memory server, with instant retries."""
    client = ValkeyClient(ValkeyConfig())
    client._client = fake_valkey
    client._is_connected = True
    manager = CacheManager(client=client, max_retries=2, retry_backoff_seconds=0)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def node_cache(cache_manager):
    return NodeCache(cache_manager)


@pytest.fixture
def metadata_store(cache_manager):
    return MetadataStore(cache_manager)


@pytest_asyncio.fixture
async def db_config(tmp_path):
    config = DatabaseConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'configs.db'}")
    await config.create_tables()
    yield config
    await config.close()


@pytest.fixture
def value_store(db_config):
    return ValueStore(db_config)


@pytest.fixture
def delivered():
    """Deliveries recorded by the event bus, as (connection_id, events) pairs."""
    return []


@pytest.fixture
def event_bus(cache_manager, delivered):
    async def deliver(connection_id, events):
        delivered.append((connection_id, events))

    return EventBus(cache_manager, deliver=deliver, reconnect_backoff_seconds=0)


@pytest.fixture
def engine(value_store, cache_manager, event_bus):
    return InvalidationEngine.from_components(value_store, cache_manager, event_bus=event_bus)
