"""
Subscription registry for watched entities.

Tracks one live channel per entity. Subscribing again for the same entity
tears the previous channel down first, so at most one channel per entity is
ever live. Operations on one entity are serialized by a per-entity lock.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Protocol

import structlog

from .errors import TransportUnavailableError
from .models import ChangeEvent, Entity
from .transport import Channel, RealtimeTransport

log = structlog.get_logger()


class ChangeListener(Protocol):
    """Receives change notifications and transport failures for one entity."""

    def on_change(self, event: ChangeEvent) -> None: ...

    def on_error(self, error: Exception) -> None: ...


@dataclass
class CallbackListener:
    """Adapts a pair of plain callables to the ChangeListener contract."""

    change: Callable[[ChangeEvent], None]
    error: Callable[[Exception], None]

    def on_change(self, event: ChangeEvent) -> None:
        self.change(event)

    def on_error(self, error: Exception) -> None:
        self.error(error)


@dataclass
class Subscription:
    entity: Entity
    channel: Channel
    listener: ChangeListener


class SubscriptionRegistry:
    """Owns the per-entity channel subscriptions for one authenticated session."""

    def __init__(self, transport: RealtimeTransport | None) -> None:
        self._transport = transport
        self._subscriptions: dict[Entity, Subscription] = {}
        self._locks: dict[Entity, asyncio.Lock] = {}

    def _lock(self, entity: Entity) -> asyncio.Lock:
        return self._locks.setdefault(entity, asyncio.Lock())

    async def subscribe(self, entity: Entity, listener: ChangeListener) -> bool:
        """
        Open a channel for ``entity`` and route its events to ``listener``.

        Never raises: transport failures are reported through
        ``listener.on_error``. Returns True when the channel joined.
        """
        transport = self._transport
        if transport is None:
            listener.on_error(TransportUnavailableError("Realtime client not available"))
            log.error("registry.transport_unavailable", entity=entity.value)
            return False

        async with self._lock(entity):
            await self._teardown(entity)

            def dispatch(event: ChangeEvent) -> None:
                if event.entity == entity:
                    listener.on_change(event)

            channel: Channel | None = None
            try:
                channel = await transport.open_channel(entity)
                transport.on_event(channel, dispatch)
                transport.on_error(channel, listener.on_error)
                await transport.join(channel)
            except Exception as exc:
                log.error("registry.subscribe_failed", entity=entity.value, error=str(exc))
                if channel is not None and not channel.closed:
                    await transport.close_channel(channel)
                listener.on_error(exc)
                return False

            self._subscriptions[entity] = Subscription(entity, channel, listener)
        log.info("registry.subscribed", entity=entity.value)
        return True

    async def unsubscribe(self, entity: Entity) -> None:
        async with self._lock(entity):
            await self._teardown(entity)

    async def _teardown(self, entity: Entity) -> None:
        # Caller holds the entity lock
        subscription = self._subscriptions.pop(entity, None)
        if subscription is None:
            return
        if self._transport is not None:
            await self._transport.close_channel(subscription.channel)
        log.info("registry.unsubscribed", entity=entity.value)

    async def unsubscribe_all(self) -> None:
        for entity in list(self._subscriptions):
            await self.unsubscribe(entity)

    def has_active_subscription(self, entity: Entity) -> bool:
        return entity in self._subscriptions

    def list_entities(self) -> list[Entity]:
        return sorted(self._subscriptions, key=lambda e: e.value)
