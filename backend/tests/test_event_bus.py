"""
Tests for update publishing, subscription matching and local delivery.
"""

import asyncio
import json

import pytest

from configcache.exceptions import PublishError, ValidationError
from configcache.models.node import UpdateEventModel
from configcache.services.event_bus import EventBus, SubscriptionRegistry, UpdateBatcher, matches_pattern


def _envelope(tenant_id="T1", config_id="C1", paths=("/settings/theme",)):
    return json.dumps({
        "tenantId": tenant_id,
        "configId": config_id,
        "data": [{"path": p, "action": "invalidated", "version": "v1", "userId": "Unknown"} for p in paths],
    })


class TestGlobMatching:
    """Test path glob translation."""

    def test_star_matches_any_sequence(self):
        assert matches_pattern("/settings/theme/color", "/settings/*")
        assert matches_pattern("/settings/", "/settings/*")
        assert not matches_pattern("/features/x", "/settings/*")

    def test_dot_is_literal(self):
        assert matches_pattern("/a.b", "/a.b")
        assert not matches_pattern("/axb", "/a.b")

    def test_other_metacharacters_are_literal(self):
        assert matches_pattern("/a+(b)", "/a+(b)")
        assert not matches_pattern("/aa(b)", "/a+(b)")

    def test_whole_path_must_match(self):
        assert not matches_pattern("/x/settings/a", "/settings/*")
        assert matches_pattern("/x/settings/a", "*/settings/*")

    def test_missing_path_never_matches(self):
        assert not matches_pattern(None, "*")


class TestSubscriptionRegistry:
    """Test registration, pruning and recipient selection."""

    def test_remove_prunes_empty_entries(self):
        registry = SubscriptionRegistry()
        registry.add("c1", "T1", "C1", "/a/*")
        registry.add("c2", "T1", "C1", "/a/*")
        registry.add("c1", "T1", "C1", "/b/*")

        registry.remove("c1")
        assert registry.patterns == {"/a/*": {"c2"}}
        assert registry.channels == {("T1", "C1"): {"c2"}}

        registry.remove("c2")
        assert registry.patterns == {}
        assert registry.channels == {}

    def test_recipients_listed_once(self):
        registry = SubscriptionRegistry()
        registry.add("c1", "T1", "C1", "/settings/*")
        registry.add("c1", "T1", "C1", "/settings/theme*")

        assert registry.recipients("T1", "C1", "/settings/theme") == ["c1"]

    def test_patterns_match_across_tenants_and_configs(self):
        registry = SubscriptionRegistry()
        registry.add("c1", "T1", "C1", "/settings/*")
        registry.add("c2", "T2", "C1")

        assert registry.recipients("T2", "C1", "/settings/a") == ["c1", "c2"]
        assert registry.recipients("T2", "C1", "/features/a") == ["c2"]


class TestEventBus:
    """Test publishing and dispatch."""

    @pytest.mark.asyncio
    async def test_publish_wire_format(self, event_bus, fake_valkey):
        events = [UpdateEventModel(path="/a", version="v9", actor_id="alice"), UpdateEventModel(path="/b")]
        await event_bus.publish("T1", "C1", events)

        channel, message = fake_valkey.published[0]
        assert channel == "config_updates:T1:C1"
        assert json.loads(message) == {
            "tenantId": "T1",
            "configId": "C1",
            "data": [
                {"path": "/a", "action": "invalidated", "version": "v9", "userId": "alice"},
                {"path": "/b", "action": "invalidated", "version": "v1", "userId": "Unknown"},
            ],
        }

    @pytest.mark.asyncio
    async def test_publish_failure_raises_publish_error(self, event_bus, fake_valkey):
        fake_valkey.failing.add("publish")
        with pytest.raises(PublishError):
            await event_bus.publish("T1", "C1", [UpdateEventModel(path="/a")])

    def test_subscribe_validates_identifiers(self, event_bus):
        with pytest.raises(ValidationError):
            event_bus.subscribe("c1", "T-1", "C1")
        assert len(event_bus.registry) == 0

    @pytest.mark.asyncio
    async def test_dispatch_to_channel_and_pattern_once(self, event_bus, delivered):
        event_bus.subscribe("broad", "T1", "C1")
        event_bus.subscribe("narrow", "T1", "C1", "/settings/*")
        event_bus.subscribe("other", "T1", "C1", "/features/*")
        event_bus.subscribe("elsewhere", "T2", "C1")
        event_bus.subscribe("globbed", "T1", "C2", "/settings/*")

        count = await event_bus.dispatch("config_updates:T1:C1", _envelope())

        assert count == 4
        assert sorted(conn for conn, _ in delivered) == ["broad", "globbed", "narrow", "other"]
        assert delivered[0][1][0]["path"] == "/settings/theme"

    @pytest.mark.asyncio
    async def test_pattern_tested_against_first_event(self, event_bus, delivered):
        event_bus.subscribe("globbed", "T1", "C2", "/settings/*")

        assert await event_bus.dispatch("config_updates:T1:C1", _envelope(paths=("/features/x", "/settings/y"))) == 0
        assert await event_bus.dispatch("config_updates:T1:C1", _envelope(paths=("/settings/y", "/features/x"))) == 1
        assert [conn for conn, _ in delivered] == ["globbed"]

    @pytest.mark.asyncio
    async def test_pattern_reaches_other_config(self, event_bus, delivered):
        event_bus.subscribe("globbed", "T1", "C2", "/settings/*")

        assert await event_bus.dispatch("config_updates:T1:C1", _envelope(paths=("/settings/x",))) == 1
        assert delivered[0][0] == "globbed"
        assert delivered[0][1][0]["path"] == "/settings/x"

    @pytest.mark.asyncio
    async def test_pattern_and_channel_match_delivers_once(self, event_bus, delivered):
        event_bus.subscribe("narrow", "T1", "C1", "/settings/*")

        assert await event_bus.dispatch("config_updates:T1:C1", _envelope()) == 1
        assert [conn for conn, _ in delivered] == ["narrow"]

    @pytest.mark.asyncio
    async def test_unsubscribed_connection_gets_nothing(self, event_bus, delivered):
        event_bus.subscribe("c1", "T1", "C1", "/settings/*")
        event_bus.unsubscribe("c1")

        assert await event_bus.dispatch("config_updates:T1:C1", _envelope()) == 0
        assert delivered == []

    @pytest.mark.asyncio
    async def test_failing_delivery_does_not_block_others(self, cache_manager):
        received = []

        async def deliver(connection_id, events):
            if connection_id == "bad":
                raise RuntimeError("socket closed")
            received.append(connection_id)

        bus = EventBus(cache_manager, deliver=deliver)
        bus.subscribe("bad", "T1", "C1")
        bus.subscribe("good", "T1", "C1")

        assert await bus.dispatch("config_updates:T1:C1", _envelope()) == 1
        assert received == ["good"]

    @pytest.mark.asyncio
    async def test_malformed_envelope_dropped(self, event_bus, delivered):
        event_bus.subscribe("c1", "T1", "C1")
        assert await event_bus.dispatch("config_updates:T1:C1", "{not json") == 0
        assert await event_bus.dispatch("config_updates:T1:C1", '{"data": []}') == 0
        assert delivered == []

    @pytest.mark.asyncio
    async def test_listener_delivers_published_envelopes(self, event_bus, delivered):
        """End to end: publish on Valkey, receive through the pattern subscription."""
        event_bus.subscribe("c1", "T1", "C1")
        await event_bus.start()
        try:
            assert event_bus.is_running
            receivers = await event_bus.publish("T1", "C1", [UpdateEventModel(path="/a", version="v2")])
            assert receivers == 1

            for _ in range(100):
                if delivered:
                    break
                await asyncio.sleep(0.01)
        finally:
            await event_bus.stop()

        assert delivered == [("c1", [{"path": "/a", "action": "invalidated", "version": "v2", "userId": "Unknown"}])]
        assert not event_bus.is_running

    @pytest.mark.asyncio
    async def test_missed_events_are_not_replayed(self, event_bus, delivered):
        await event_bus.publish("T1", "C1", [UpdateEventModel(path="/a")])
        event_bus.subscribe("late", "T1", "C1")
        await event_bus.start()
        await asyncio.sleep(0.02)
        await event_bus.stop()

        assert delivered == []


class TestUpdateBatcher:
    """Test batched publishing."""

    @pytest.mark.asyncio
    async def test_flush_publishes_one_envelope_per_scope(self, event_bus, fake_valkey):
        batcher = UpdateBatcher(event_bus, interval_ms=1000)
        batcher.add("T1", "C1", UpdateEventModel(path="/a"))
        batcher.add("T1", "C1", UpdateEventModel(path="/b"))
        batcher.add("T2", "C1", UpdateEventModel(path="/c"))
        assert batcher.pending_count == 3

        assert await batcher.flush() == 2
        assert batcher.pending_count == 0

        envelopes = {channel: json.loads(message) for channel, message in fake_valkey.published}
        assert [e["path"] for e in envelopes["config_updates:T1:C1"]["data"]] == ["/a", "/b"]
        assert [e["path"] for e in envelopes["config_updates:T2:C1"]["data"]] == ["/c"]

    @pytest.mark.asyncio
    async def test_empty_flush_publishes_nothing(self, event_bus, fake_valkey):
        batcher = UpdateBatcher(event_bus, interval_ms=1000)
        assert await batcher.flush() == 0
        assert fake_valkey.published == []

    @pytest.mark.asyncio
    async def test_timer_flushes(self, event_bus, fake_valkey):
        batcher = UpdateBatcher(event_bus, interval_ms=10)
        await batcher.start()
        try:
            batcher.add("T1", "C1", UpdateEventModel(path="/a"))
            for _ in range(100):
                if fake_valkey.published:
                    break
                await asyncio.sleep(0.01)
        finally:
            await batcher.stop()

        assert len(fake_valkey.published) == 1

    @pytest.mark.asyncio
    async def test_stop_flushes_pending(self, event_bus, fake_valkey):
        batcher = UpdateBatcher(event_bus, interval_ms=60000)
        await batcher.start()
        batcher.add("T1", "C1", UpdateEventModel(path="/a"))
        await batcher.stop()

        assert len(fake_valkey.published) == 1

    @pytest.mark.asyncio
    async def test_failed_batch_is_dropped(self, event_bus, fake_valkey):
        batcher = UpdateBatcher(event_bus, interval_ms=1000)
        batcher.add("T1", "C1", UpdateEventModel(path="/a"))
        fake_valkey.failing.add("publish")

        assert await batcher.flush() == 0
        assert batcher.pending_count == 0

    def test_interval_must_be_positive(self, event_bus):
        with pytest.raises(ValidationError):
            UpdateBatcher(event_bus, interval_ms=0)
