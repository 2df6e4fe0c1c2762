"""
Core data types: watched entities, change events and sync status records.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class Entity(str, Enum):
    """The fixed set of watched tables."""

    CLIENTS = "clients"
    PROPOSALS = "proposals"
    ORGANIZATIONS = "organizations"

    @property
    def label(self) -> str:
        return self.value.capitalize()


WATCHED_ENTITIES: tuple[Entity, ...] = (
    Entity.CLIENTS,
    Entity.PROPOSALS,
    Entity.ORGANIZATIONS,
)


class SyncStatus(str, Enum):
    LOADING = "loading"
    CONNECTED = "connected"
    SYNCED = "synced"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """An insert/update/delete notification for one watched entity."""

    entity: Entity
    kind: ChangeKind
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ChangeEvent:
        """
        Decode a change-feed payload.

        Accepts ``type`` or ``eventType`` for the kind and ``record``/``new``,
        ``old_record``/``old`` for the row images. Raises ``ValueError`` for
        unknown tables or kinds.
        """
        kind = ChangeKind(str(payload.get("type") or payload.get("eventType", "")).upper())
        entity = Entity(payload.get("table", ""))
        new = payload.get("record", payload.get("new"))
        old = payload.get("old_record", payload.get("old"))
        return cls(entity=entity, kind=kind, new=new or None, old=old or None)


@dataclass
class SyncStatusRecord:
    status: SyncStatus = SyncStatus.LOADING
    last_update: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "last_update": self.last_update.isoformat() if self.last_update else None,
        }


@dataclass(frozen=True)
class Session:
    """An authenticated remote session."""

    access_token: str
    refresh_token: str = ""
    expires_at: float | None = None
    user: dict[str, Any] | None = None

    def user_info(self) -> dict[str, Any]:
        """Derive the cached user profile from the session user."""
        user = self.user or {}
        metadata = user.get("user_metadata") or {}
        return {
            "id": user.get("id"),
            "email": user.get("email"),
            "name": metadata.get("name") or user.get("email"),
            "role": metadata.get("role", "user"),
        }
