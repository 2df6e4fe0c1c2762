"""
Per-entity sync status shared between the bridge and its readers.

Writes are last-write-wins: the bridge and manual refreshes may interleave
and whichever runs last determines the visible status.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from .models import WATCHED_ENTITIES, Entity, SyncStatus, SyncStatusRecord

log = structlog.get_logger()

StatusListener = Callable[[Entity, SyncStatusRecord], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatusStore:
    def __init__(self, entities: tuple[Entity, ...] = WATCHED_ENTITIES) -> None:
        self._records: dict[Entity, SyncStatusRecord] = {
            entity: SyncStatusRecord() for entity in entities
        }
        self._listeners: list[StatusListener] = []

    def get(self, entity: Entity) -> SyncStatusRecord:
        return self._records[entity]

    def status(self, entity: Entity) -> SyncStatus:
        return self._records[entity].status

    def last_update(self, entity: Entity) -> datetime | None:
        return self._records[entity].last_update

    def set_status(self, entity: Entity, status: SyncStatus) -> None:
        record = self._records[entity]
        if record.status != status:
            log.debug(
                "status.changed",
                entity=entity.value,
                old=record.status.value,
                new=status.value,
            )
        record.status = status
        self._notify(entity, record)

    def set_last_update(self, entity: Entity, when: datetime | None = None) -> None:
        record = self._records[entity]
        record.last_update = when or utcnow()
        self._notify(entity, record)

    def set_all(self, status: SyncStatus) -> None:
        for entity in self._records:
            self.set_status(entity, status)

    def on_change(self, listener: StatusListener) -> None:
        """Register a reader notified after every write."""
        self._listeners.append(listener)

    def snapshot(self, now: datetime | None = None) -> dict[str, dict[str, Any]]:
        now = now or utcnow()
        result = {}
        for entity, record in self._records.items():
            entry = record.to_dict()
            entry["label"] = entity.label
            entry["since_update"] = describe_elapsed(record.last_update, now)
            result[entity.value] = entry
        return result

    def _notify(self, entity: Entity, record: SyncStatusRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(entity, record)
            except Exception:
                log.exception("status.listener_error", entity=entity.value)


def describe_elapsed(last_update: datetime | None, now: datetime | None = None) -> str:
    """Human-readable time since the last update."""
    if last_update is None:
        return "never"
    now = now or utcnow()
    minutes = int((now - last_update).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"
