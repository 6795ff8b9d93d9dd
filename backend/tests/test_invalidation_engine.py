"""
Tests for the write, read and invalidation paths of the engine.

Runs against the in-memory Valkey stand-in and a temporary SQLite database.
"""

import asyncio
import json
import re

import pytest

from configcache.exceptions import CacheError, ValidationError
from configcache.models.node import InvalidationPolicy
from configcache.services.invalidation_engine import InvalidationEngine, VersionMinter

VERSION_PATTERN = re.compile(r"^v\d+$")


def _node_key(path, tenant_id="T1", config_id="C1"):
    return f"tenant:{tenant_id}:config:{config_id}:node:{path}"


class TestVersionMinter:
    """Test version token minting."""

    def test_versions_increase_when_clock_stalls(self):
        minter = VersionMinter(clock=lambda: 1.0)
        assert minter.mint() == "v1000"
        assert minter.mint() == "v1001"

    def test_versions_increase_when_clock_goes_back(self):
        ticks = iter([5.0, 4.0])
        minter = VersionMinter(clock=lambda: next(ticks))
        assert minter.mint() == "v5000"
        assert minter.mint() == "v5001"


class TestWrites:
    """Test the write path."""

    @pytest.mark.asyncio
    async def test_write_then_read_tree_and_metrics(self, engine):
        result = await engine.write("T1", "C1", "/settings/theme/color", "blue")

        assert result.status == "updated"
        assert VERSION_PATTERN.match(result.version)

        tree = await engine.get("T1", "C1")
        assert tree == {"settings": {"theme": {"color": {"value": "blue"}}}}

        report = await engine.list_cached_nodes("T1", "C1")
        assert report.cached_nodes == ["/settings/theme/color"]
        assert report.metrics[0].path == "/settings/theme/color"
        assert report.metrics[0].metadata.version == result.version
        assert report.metrics[0].metadata.dependencies == []

    @pytest.mark.asyncio
    async def test_read_after_write(self, engine):
        result = await engine.write("T1", "C1", "/a", "one")

        entry = await engine.get_node("T1", "C1", "/a")
        assert entry.value == "one"
        assert entry.version == result.version

        await engine.write("T1", "C1", "/a", "two")
        assert (await engine.get_node("T1", "C1", "/a")).value == "two"
        assert await engine.get("T1", "C1") == {"a": {"value": "two"}}

    @pytest.mark.asyncio
    async def test_consecutive_writes_get_new_versions(self, engine):
        first = await engine.write("T1", "C1", "/a", "1")
        second = await engine.write("T1", "C1", "/a", "2")
        assert first.version != second.version

    @pytest.mark.asyncio
    async def test_write_records_dependencies_and_back_edges(self, engine, metadata_store):
        result = await engine.write("T1", "C1", "/a", "x", dependencies=["/b"])

        assert result.invalidated == ["/a", "/b"]
        assert await metadata_store.get_dependencies("T1", "C1", "/a") == ["/b"]
        assert await metadata_store.get_dependents("T1", "C1", "/b") == ["/a"]

    @pytest.mark.asyncio
    async def test_rewrites_do_not_duplicate_dependents(self, engine, metadata_store):
        for value in ("1", "2", "3"):
            await engine.write("T1", "C1", "/a", value, dependencies=["/b"])
        assert await metadata_store.get_dependents("T1", "C1", "/b") == ["/a"]

    @pytest.mark.asyncio
    async def test_invalid_identifiers_touch_nothing(self, engine, fake_valkey, value_store):
        with pytest.raises(ValidationError, match="alphanumeric"):
            await engine.write("T1@evil", "C1", "/a", "x")
        with pytest.raises(ValidationError):
            await engine.get("T1", "C 1")

        assert fake_valkey.calls == []
        assert await value_store.query_all("T1", "C1") == []

    @pytest.mark.asyncio
    async def test_path_must_be_rooted(self, engine, fake_valkey, value_store):
        with pytest.raises(ValidationError, match="must start with /"):
            await engine.write("T1", "C1", "settings", "x")

        assert fake_valkey.calls == []
        assert await value_store.query_all("T1", "C1") == []

    @pytest.mark.asyncio
    async def test_non_string_value_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.write("T1", "C1", "/a", 42)
        with pytest.raises(ValidationError):
            await engine.write("T1", "C1", "/a", "x", dependencies=[""])

    @pytest.mark.asyncio
    async def test_concurrent_writes_both_land(self, engine):
        x, y = await asyncio.gather(
            engine.write("T1", "C1", "/x", "1"),
            engine.write("T1", "C1", "/y", "2"),
        )

        assert x.version != y.version
        assert await engine.get("T1", "C1") == {"x": {"value": "1"}, "y": {"value": "2"}}

    @pytest.mark.asyncio
    async def test_cache_failure_rolls_back(self, engine, fake_valkey, value_store):
        fake_valkey.failing.add("pipeline")

        with pytest.raises(CacheError):
            await engine.write("T1", "C1", "/a", "x")

        assert await value_store.get_value("T1", "C1", "/a") is None
        assert fake_valkey.published == []

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_write(self, engine, fake_valkey, value_store):
        fake_valkey.failing.add("publish")

        result = await engine.write("T1", "C1", "/a", "x")

        assert result.published is False
        assert await value_store.get_value("T1", "C1", "/a") == "x"

    @pytest.mark.asyncio
    async def test_one_event_per_write(self, engine, fake_valkey):
        result = await engine.write("T1", "C1", "/a", "x", dependencies=["/b", "/c"], actor_id="alice")

        assert len(fake_valkey.published) == 1
        channel, message = fake_valkey.published[0]
        assert channel == "config_updates:T1:C1"
        assert json.loads(message)["data"] == [
            {"path": "/a", "action": "invalidated", "version": result.version, "userId": "alice"}
        ]


class TestCascade:
    """Test one-hop invalidation under both policies."""

    async def _write_chain(self, engine):
        await engine.write("T1", "C1", "/b", "b")
        await engine.write("T1", "C1", "/a", "a", dependencies=["/b"])
        await engine.write("T1", "C1", "/c", "c", dependencies=["/a"])
        for path in ("/a", "/b", "/c"):
            await engine.get_node("T1", "C1", path)

    @pytest.mark.asyncio
    async def test_dependency_written_after_dependent(self, engine, metadata_store, fake_valkey):
        await engine.write("T1", "C1", "/a", "a", dependencies=["/b"])
        await engine.write("T1", "C1", "/b", "b")
        assert await metadata_store.get_dependents("T1", "C1", "/b") == ["/a"]

        await engine.get_node("T1", "C1", "/a")
        await engine.get_node("T1", "C1", "/b")
        await engine.invalidate("T1", "C1", "/a")

        assert _node_key("/a") not in fake_valkey.strings
        assert _node_key("/b") not in fake_valkey.strings

    @pytest.mark.asyncio
    async def test_dependencies_policy_is_one_hop(self, engine, fake_valkey):
        await self._write_chain(engine)

        invalidated = await engine.invalidate("T1", "C1", "/a")

        assert invalidated == ["/a", "/b"]
        assert _node_key("/a") not in fake_valkey.strings
        assert _node_key("/b") not in fake_valkey.strings
        assert _node_key("/c") in fake_valkey.strings

    @pytest.mark.asyncio
    async def test_dependents_policy(self, value_store, cache_manager, event_bus, fake_valkey):
        engine = InvalidationEngine.from_components(
            value_store, cache_manager, policy=InvalidationPolicy.DEPENDENTS, event_bus=event_bus
        )
        await self._write_chain(engine)

        invalidated = await engine.invalidate("T1", "C1", "/b")

        assert invalidated == ["/b", "/a"]
        assert _node_key("/c") in fake_valkey.strings

    @pytest.mark.asyncio
    async def test_policy_accepts_plain_string(self, value_store, cache_manager):
        engine = InvalidationEngine.from_components(value_store, cache_manager, policy="dependents")
        assert engine.policy is InvalidationPolicy.DEPENDENTS

    @pytest.mark.asyncio
    async def test_invalidate_publishes_current_version(self, engine, fake_valkey):
        result = await engine.write("T1", "C1", "/a", "x")
        fake_valkey.published.clear()

        await engine.invalidate("T1", "C1", "/a", actor_id="ops")

        event = json.loads(fake_valkey.published[0][1])["data"][0]
        assert event["version"] == result.version
        assert event["userId"] == "ops"


class TestReads:
    """Test snapshot caching and read degradation."""

    @pytest.mark.asyncio
    async def test_snapshot_served_until_next_write(self, engine, value_store):
        await engine.write("T1", "C1", "/a", "1")
        assert await engine.get("T1", "C1") == {"a": {"value": "1"}}

        # Bypasses the engine, so nothing invalidates the snapshot
        await value_store.upsert("T1", "C1", "/a", "changed")
        assert await engine.get("T1", "C1") == {"a": {"value": "1"}}

        await engine.write("T1", "C1", "/b", "2")
        assert await engine.get("T1", "C1") == {"a": {"value": "changed"}, "b": {"value": "2"}}

    @pytest.mark.asyncio
    async def test_write_drops_prefix_snapshots(self, engine, fake_valkey):
        await engine.write("T1", "C1", "/settings/a", "1")
        await engine.write("T1", "C1", "/other", "2")

        assert await engine.get("T1", "C1", "/settings") == {"settings": {"a": {"value": "1"}}}
        assert "tenant:T1:config:C1:full:/settings" in fake_valkey.strings

        await engine.write("T1", "C1", "/settings/b", "3")
        assert "tenant:T1:config:C1:full:/settings" not in fake_valkey.strings
        assert await engine.get("T1", "C1", "/settings") == {
            "settings": {"a": {"value": "1"}, "b": {"value": "3"}}
        }

    @pytest.mark.asyncio
    async def test_reads_survive_cache_outage(self, engine, fake_valkey):
        await engine.write("T1", "C1", "/a", "1")
        fake_valkey.failing.update({"get", "setex", "set"})

        assert await engine.get("T1", "C1") == {"a": {"value": "1"}}
        entry = await engine.get_node("T1", "C1", "/a")
        assert entry.value == "1"

    @pytest.mark.asyncio
    async def test_unknown_node(self, engine):
        assert await engine.get_node("T1", "C1", "/missing") is None
        assert await engine.get("T1", "C1") == {}

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, engine):
        await engine.write("T1", "C1", "/a", "1")
        await engine.write("T2", "C1", "/a", "2")

        assert await engine.get("T1", "C1") == {"a": {"value": "1"}}
        assert await engine.get("T2", "C1") == {"a": {"value": "2"}}

    @pytest.mark.asyncio
    async def test_cache_stats_count_snapshot_reads(self, engine):
        await engine.write("T1", "C1", "/a", "1")
        await engine.get("T1", "C1")
        await engine.get("T1", "C1")

        assert engine.get_cache_stats() == {"hits": 1, "misses": 1}


class TestWriteRequests:
    """Test request-body handling."""

    @pytest.mark.asyncio
    async def test_user_id_becomes_actor(self, engine, fake_valkey):
        await engine.handle_write("T1", "C1", {"path": "/a", "value": "x", "userId": "alice"})

        event = json.loads(fake_valkey.published[0][1])["data"][0]
        assert event["userId"] == "alice"

    @pytest.mark.asyncio
    async def test_missing_user_id_defaults(self, engine, fake_valkey):
        await engine.handle_write("T1", "C1", {"path": "/a", "value": "x", "dependencies": ["/b"]})

        event = json.loads(fake_valkey.published[0][1])["data"][0]
        assert event["userId"] == "Unknown"

    @pytest.mark.asyncio
    async def test_malformed_body_rejected(self, engine, value_store):
        with pytest.raises(ValidationError):
            await engine.handle_write("T1", "C1", {"path": "/a"})
        assert await value_store.query_all("T1", "C1") == []


class TestCachedNodeListing:
    """Test the paginated cached-node report."""

    @pytest.mark.asyncio
    async def test_pagination(self, engine):
        for path in ("/c", "/a", "/b"):
            await engine.write("T1", "C1", path, "x")

        report = await engine.list_cached_nodes("T1", "C1", limit=2, offset=1)

        assert report.cached_nodes == ["/a", "/b", "/c"]
        assert [m.path for m in report.metrics] == ["/b", "/c"]

    @pytest.mark.asyncio
    async def test_negative_limit_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.list_cached_nodes("T1", "C1", limit=-1)


class TestBatchedPublishing:
    """Test engines that batch their update events."""

    @pytest.mark.asyncio
    async def test_events_published_on_flush(self, value_store, cache_manager, event_bus, fake_valkey):
        engine = InvalidationEngine.from_components(
            value_store, cache_manager, event_batch_interval_ms=60000, event_bus=event_bus
        )
        await engine.start()

        await engine.write("T1", "C1", "/a", "1")
        await engine.write("T1", "C1", "/b", "2")
        assert fake_valkey.published == []
        assert engine.batcher.pending_count == 2

        await engine.close()

        assert len(fake_valkey.published) == 1
        paths = [event["path"] for event in json.loads(fake_valkey.published[0][1])["data"]]
        assert paths == ["/a", "/b"]


class TestHealth:
    """Test the combined health report."""

    @pytest.mark.asyncio
    async def test_healthy_report(self, engine):
        report = await engine.health_check()

        assert report["status"] == "healthy"
        assert report["database"]["available"] is True
        assert report["database"]["database_type"] == "sqlite"
        assert report["cache_operations"]["circuit_breaker_open"] is False
        assert report["event_bus_running"] is False

    @pytest.mark.asyncio
    async def test_cache_outage_is_unhealthy(self, engine, fake_valkey):
        fake_valkey.failing.update({"get", "set", "setex", "delete"})

        report = await engine.health_check()

        assert report["status"] == "unhealthy"
