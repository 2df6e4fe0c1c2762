"""
Realtime bridge orchestrator.

Fans per-entity channel events into the shared sync status store and
performs manual refreshes through the storage interface. Lifecycle follows
the authenticated session: start when a session becomes active, tear every
subscription down when it ends.
"""

from __future__ import annotations

from typing import Any

import structlog

from .metrics import MetricsCollector
from .models import WATCHED_ENTITIES, ChangeEvent, Entity, SyncStatus
from .notify import LogNotifier, Notification, Notifier
from .registry import SubscriptionRegistry
from .status import SyncStatusStore
from .storage import Record, Storage
from .tokens import TokenSync

log = structlog.get_logger()


class EntityListener:
    """Routes one entity's channel callbacks into the status store."""

    def __init__(self, bridge: RealtimeBridge, entity: Entity):
        self._bridge = bridge
        self.entity = entity

    def on_change(self, event: ChangeEvent) -> None:
        self._bridge.handle_change(self.entity, event)

    def on_error(self, error: Exception) -> None:
        self._bridge.handle_error(self.entity, error)


class RealtimeBridge:
    """
    Keeps the sync status of every watched entity current.

    Status per entity moves ``loading -> connected | error`` on subscribe,
    ``-> synced`` only after a successful fetch, and back to ``loading`` on
    the next refresh attempt.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        tokens: TokenSync,
        storage: Storage,
        status: SyncStatusStore | None = None,
        notifier: Notifier | None = None,
        metrics: MetricsCollector | None = None,
        entities: tuple[Entity, ...] = WATCHED_ENTITIES,
    ):
        self._registry = registry
        self._tokens = tokens
        self._storage = storage
        self._status = status or SyncStatusStore(entities)
        self._notifier = notifier or LogNotifier()
        self._metrics = metrics or MetricsCollector()
        self._entities = entities
        self._active = False
        self._generation = 0

    @property
    def status(self) -> SyncStatusStore:
        return self._status

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def entities(self) -> tuple[Entity, ...]:
        return self._entities

    @property
    def active(self) -> bool:
        return self._active

    async def on_session_change(self, active: bool) -> None:
        if active:
            await self.start()
        else:
            await self.stop()

    async def start(self) -> None:
        """Subscribe every watched entity and run the initial fetch."""
        self._generation += 1
        generation = self._generation
        self._active = True
        log.info("bridge.starting", entities=[e.value for e in self._entities])
        try:
            await self._tokens.sync_token()

            for entity in self._entities:
                if generation != self._generation:
                    break
                self._status.set_status(entity, SyncStatus.LOADING)
                joined = await self._registry.subscribe(entity, EntityListener(self, entity))
                if generation != self._generation:
                    await self._abandon(entity)
                    break
                self._update_subscription_gauge()
                if not joined:
                    # Stays in error until a manual refresh
                    continue

                # Initial fetch; a failure flags only this entity
                try:
                    await self.refresh_data(entity)
                except Exception as exc:
                    log.warning("bridge.initial_fetch_failed", entity=entity.value, error=str(exc))
                if generation != self._generation:
                    await self._abandon(entity)
                    break
        except Exception as exc:
            if generation != self._generation:
                log.warning("bridge.abandoned_start_failed", error=str(exc))
                return
            log.exception("bridge.start_failed")
            self._status.set_all(SyncStatus.ERROR)
            self._notifier.notify(Notification(
                title="Sync initialization failed",
                description=f"Realtime sync could not be initialized: {exc}",
                variant="destructive",
            ))
            return

        if generation != self._generation:
            log.info("bridge.start_abandoned")
            return
        log.info("bridge.started", subscriptions=len(self._registry.list_entities()))

    async def stop(self) -> None:
        """Tear down every subscription and mark entities disconnected."""
        self._generation += 1
        self._active = False
        await self._registry.unsubscribe_all()
        self._update_subscription_gauge()
        self._status.set_all(SyncStatus.DISCONNECTED)
        log.info("bridge.stopped")

    async def _abandon(self, entity: Entity) -> None:
        # A stop ran while start was mid-flight for this entity
        if self._active:
            return
        await self._registry.unsubscribe(entity)
        self._update_subscription_gauge()
        self._status.set_status(entity, SyncStatus.DISCONNECTED)

    def handle_change(self, entity: Entity, event: ChangeEvent) -> None:
        self._metrics.inc("events_received_total", entity=entity.value)
        self._status.set_last_update(entity)
        self._status.set_status(entity, SyncStatus.CONNECTED)
        log.debug("bridge.change", entity=entity.value, kind=event.kind.value)

    def handle_error(self, entity: Entity, error: Exception) -> None:
        self._metrics.inc("transport_errors_total", entity=entity.value)
        self._status.set_status(entity, SyncStatus.ERROR)
        log.error("bridge.transport_error", entity=entity.value, error=str(error))
        self._notifier.notify(Notification(
            title="Realtime connection error",
            description=f"Could not keep a realtime connection for {entity.label}: {error}",
            variant="destructive",
        ))

    async def refresh_data(self, entity: Entity) -> list[Record] | None:
        """
        Fetch every current record for ``entity``.

        Returns None without fetching when no session is active. Fetch
        failures flag the entity, notify, and are re-raised.
        """
        if not await self._tokens.is_authenticated():
            self._status.set_status(entity, SyncStatus.DISCONNECTED)
            return None

        await self._tokens.sync_token()
        self._status.set_status(entity, SyncStatus.LOADING)
        self._metrics.inc("refresh_total", entity=entity.value)
        try:
            records = await self._storage.list(entity.value)
        except Exception as exc:
            self._metrics.inc("refresh_errors_total", entity=entity.value)
            self._status.set_status(entity, SyncStatus.ERROR)
            log.error("bridge.refresh_failed", entity=entity.value, error=str(exc))
            self._notifier.notify(Notification(
                title=f"Could not sync {entity.label}",
                description=str(exc) or "Communication with the server failed",
                variant="destructive",
            ))
            raise

        self._status.set_status(entity, SyncStatus.SYNCED)
        self._status.set_last_update(entity)
        log.info("bridge.refreshed", entity=entity.value, records=len(records))
        return records

    async def refresh_all(self) -> dict[Entity, list[Record] | None]:
        """Refresh every watched entity in order, stopping at the first failure."""
        results: dict[Entity, Any] = {}
        try:
            for entity in self._entities:
                results[entity] = await self.refresh_data(entity)
        except Exception:
            self._notifier.notify(Notification(
                title="Sync failed",
                description="There was a problem synchronizing the data.",
                variant="destructive",
            ))
            raise
        self._notifier.notify(Notification(
            title="Sync complete",
            description="All data was synchronized successfully.",
        ))
        return results

    def _update_subscription_gauge(self) -> None:
        self._metrics.set_gauge("subscriptions_active", len(self._registry.list_entities()))
