"""
User-visible notifications (toasts).

The bridge reports errors and completed refreshes through a Notifier.
LogNotifier writes them to the structured log; UI surfaces can register their
own implementation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol

import structlog

log = structlog.get_logger()


@dataclass(frozen=True)
class Notification:
    title: str
    description: str = ""
    variant: Literal["default", "destructive"] = "default"


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LogNotifier:
    def notify(self, notification: Notification) -> None:
        if notification.variant == "destructive":
            log.warning("notify.error", title=notification.title, description=notification.description)
        else:
            log.info("notify.info", title=notification.title, description=notification.description)


class RecordingNotifier(LogNotifier):
    """Logs notifications and keeps the most recent ones for the status server."""

    def __init__(self, limit: int = 50) -> None:
        self._limit = limit
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        super().notify(notification)
        self.notifications.append(notification)
        self.notifications[:] = self.notifications[-self._limit:] if self._limit else []
