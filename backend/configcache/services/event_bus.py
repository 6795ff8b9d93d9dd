"""
Update event fan-out over Valkey Pub/Sub.

Writers publish envelopes on ``config_updates:{tenant}:{config}``. Every
process running an ``EventBus`` listener pattern-subscribes to all update
channels and hands each envelope to its local subscribers through an
injected delivery callable.

Local subscribers join a tenant/config channel and may additionally
register path globs (``*`` matches any sequence, everything else is
literal). Globs are process-wide: they also select envelopes of other
tenant/configs. A glob is tested against the path of the first event in
the envelope. Each connection receives an envelope at most once, however
many of its subscriptions match.

Delivery is best-effort: nothing is persisted or replayed.
"""

import asyncio
import json
import logging
import re
from collections import defaultdict
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Sequence, Set, Tuple

from pydantic import ValidationError as PydanticValidationError
from valkey.exceptions import ValkeyError

from ..cache.manager import CacheManager
from ..cache.utils import CacheKeyBuilder
from ..exceptions import CacheError, PublishError, ValidationError
from ..models.node import UpdateEnvelopeModel, UpdateEventModel
from .validation import validate_identifiers

logger = logging.getLogger(__name__)

Deliver = Callable[[str, List[Dict[str, Any]]], Awaitable[None]]
Scope = Tuple[str, str]


@lru_cache(maxsize=1024)
def glob_to_regex(pattern: str) -> Pattern:
    """Compile a path glob where ``*`` is the only wildcard."""
    return re.compile("^" + re.escape(pattern).replace(r"\*", ".*") + "$")


def matches_pattern(path: Optional[str], pattern: str) -> bool:
    if path is None:
        return False
    return glob_to_regex(pattern).match(path) is not None


class SubscriptionRegistry:
    """
    Which local connections listen to which tenant/config channels and path globs.

    Channels are per tenant/config. Globs are process-wide and are tested
    against envelopes from every tenant/config.
    """

    def __init__(self):
        self.channels: Dict[Scope, Set[str]] = {}
        self.patterns: Dict[str, Set[str]] = {}

    def add(self, connection_id: str, tenant_id: str, config_id: str, pattern: Optional[str] = None) -> None:
        self.channels.setdefault((tenant_id, config_id), set()).add(connection_id)
        if pattern:
            self.patterns.setdefault(pattern, set()).add(connection_id)

    def remove(self, connection_id: str) -> None:
        """Drop a connection everywhere, pruning entries left without members."""
        for registry in (self.channels, self.patterns):
            for entry in list(registry):
                registry[entry].discard(connection_id)
                if not registry[entry]:
                    del registry[entry]

    def pattern_recipients(self, path: Optional[str]) -> List[str]:
        selected: Dict[str, None] = {}
        for pattern, members in self.patterns.items():
            if matches_pattern(path, pattern):
                selected.update(dict.fromkeys(sorted(members)))
        return list(selected)

    def recipients(self, tenant_id: str, config_id: str, path: Optional[str]) -> List[str]:
        """Pattern matches plus channel members, each connection listed once."""
        selected = dict.fromkeys(self.pattern_recipients(path))
        selected.update(dict.fromkeys(sorted(self.channels.get((tenant_id, config_id), ()))))
        return list(selected)

    def __len__(self) -> int:
        return len({conn for members in self.channels.values() for conn in members})


class EventBus:
    """
    Publishes update envelopes and dispatches received ones to local subscribers.

    Args:
        cache_manager: Manager used for publishing and for the Pub/Sub listener
        deliver: Coroutine called as ``deliver(connection_id, events)``
    """

    def __init__(self, cache_manager: CacheManager, deliver: Optional[Deliver] = None,
                 reconnect_backoff_seconds: float = 0.5):
        self.cache = cache_manager
        self.deliver = deliver
        self.registry = SubscriptionRegistry()
        self.keys = CacheKeyBuilder()
        self.reconnect_backoff_seconds = reconnect_backoff_seconds
        self.delivered_count = 0
        self._listener: Optional[asyncio.Task] = None
        self._subscribed = asyncio.Event()

    def subscribe(self, connection_id: str, tenant_id: str, config_id: str, pattern: Optional[str] = None) -> None:
        """
        Register a connection on a tenant/config channel, optionally with a path glob.

        Raises:
            ValidationError: If the identifiers are not alphanumeric
        """
        validate_identifiers(tenant_id, config_id)
        self.registry.add(connection_id, tenant_id, config_id, pattern)
        logger.info(f"{connection_id} subscribed to {tenant_id}/{config_id}" + (f" ({pattern})" if pattern else ""))

    def unsubscribe(self, connection_id: str) -> None:
        self.registry.remove(connection_id)
        logger.info(f"{connection_id} unsubscribed")

    async def publish(self, tenant_id: str, config_id: str, events: Sequence[UpdateEventModel]) -> int:
        """
        Publish a batch of update events for one tenant/config.

        Returns:
            Number of Valkey subscribers that received the envelope

        Raises:
            PublishError: If the envelope could not be published
        """
        envelope = UpdateEnvelopeModel(tenant_id=tenant_id, config_id=config_id, data=list(events))
        channel = self.keys.updates_channel(tenant_id, config_id)
        try:
            receivers = await self.cache.publish(channel, envelope.to_wire())
        except CacheError as e:
            raise PublishError(f"Publishing to {channel} failed: {e}") from e
        logger.debug(f"Published {len(envelope.data)} events to {channel} ({receivers} receivers)")
        return receivers

    async def dispatch(self, channel: str, message: Any) -> int:
        """
        Deliver one received envelope to the matching local connections.

        Malformed envelopes are logged and dropped. A failing delivery does
        not stop delivery to the remaining connections.

        Returns:
            Number of connections the envelope was delivered to
        """
        try:
            payload = json.loads(message) if isinstance(message, (str, bytes)) else message
            envelope = UpdateEnvelopeModel.model_validate(payload)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(f"Dropping malformed envelope on {channel}: {e}")
            return 0

        first_path = envelope.data[0].path if envelope.data else None
        recipients = self.registry.recipients(envelope.tenant_id, envelope.config_id, first_path)
        if not recipients or self.deliver is None:
            return 0

        events = [event.to_wire() for event in envelope.data]
        delivered = 0
        for connection_id in recipients:
            try:
                await self.deliver(connection_id, events)
                delivered += 1
            except Exception as e:
                logger.warning(f"Delivery to {connection_id} failed: {e}")

        self.delivered_count += delivered
        logger.debug(f"Dispatched envelope from {channel} to {delivered} connections")
        return delivered

    @property
    def is_running(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def start(self) -> None:
        """Start the Pub/Sub listener; returns once the pattern subscription is active."""
        if self.is_running:
            return
        self._subscribed.clear()
        self._listener = asyncio.create_task(self._listen())
        waiter = asyncio.create_task(self._subscribed.wait())
        done, _ = await asyncio.wait({waiter, self._listener}, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            waiter.cancel()
            # Listener exited before subscribing; surface its error
            self._listener.result()
        logger.info("EventBus listener started")

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        self._listener = None
        logger.info("EventBus listener stopped")

    async def _listen(self) -> None:
        pattern = self.keys.updates_channel_pattern()
        failures = 0
        while True:
            pubsub = None
            try:
                pubsub = await self.cache.pubsub()
                await pubsub.psubscribe(pattern)
                self._subscribed.set()
                failures = 0
                async for message in pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    await self.dispatch(message["channel"], message["data"])
            except (ValkeyError, CacheError, OSError) as e:
                if not self._subscribed.is_set():
                    raise
                failures += 1
                delay = min(self.reconnect_backoff_seconds * (2 ** (failures - 1)), 30.0)
                logger.warning(f"Pub/Sub listener error, resubscribing in {delay:.2f}s: {e}")
                await asyncio.sleep(delay)
            finally:
                if pubsub is not None:
                    try:
                        await pubsub.aclose()
                    except (ValkeyError, OSError) as e:
                        logger.debug(f"Error closing Pub/Sub connection: {e}")


class UpdateBatcher:
    """
    Collects update events per tenant/config and publishes them in batches.

    Batches are flushed every ``interval_ms`` while running and once more on
    ``stop()``. Events of a batch whose publish fails are dropped.
    """

    def __init__(self, event_bus: EventBus, interval_ms: int = 1000):
        if interval_ms <= 0:
            raise ValidationError("Batch interval must be positive")
        self.event_bus = event_bus
        self.interval_ms = interval_ms
        self._pending: Dict[Scope, List[UpdateEventModel]] = defaultdict(list)
        self._task: Optional[asyncio.Task] = None

    def add(self, tenant_id: str, config_id: str, event: UpdateEventModel) -> None:
        self._pending[(tenant_id, config_id)].append(event)

    @property
    def pending_count(self) -> int:
        return sum(len(events) for events in self._pending.values())

    async def flush(self) -> int:
        """
        Publish every pending batch.

        Returns:
            Number of batches published
        """
        pending, self._pending = self._pending, defaultdict(list)
        published = 0
        for (tenant_id, config_id), events in pending.items():
            if not events:
                continue
            try:
                await self.event_bus.publish(tenant_id, config_id, events)
                published += 1
            except PublishError as e:
                logger.warning(f"Dropping {len(events)} batched updates for {tenant_id}/{config_id}: {e}")
        return published

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            await self.flush()
