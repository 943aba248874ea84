"""Notification sinks for backup and restore events.

Services receive a sink explicitly instead of reaching for a global
application handle. Any object with a ``notify(notification)`` method
satisfies :class:`NotificationSink`.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

BACKUP_CREATED = "backup-created"
BACKUP_FAILED = "backup-failed"
BACKUP_RESTORED = "backup-restored"


class Notification(BaseModel):
    """A single event emitted by the backup core."""

    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class NotificationSink(Protocol):
    """Contract for receiving backup/restore events."""

    def notify(self, notification: Notification) -> None:
        """Deliver one notification. Must not block."""
        ...


class NullNotificationSink:
    """Drops every notification."""

    def notify(self, notification: Notification) -> None:
        pass


class LoggingNotificationSink:
    """Writes notifications to the log; the CLI default."""

    def notify(self, notification: Notification) -> None:
        logger.info("Event %s %s", notification.event, notification.payload)


class RecordingNotificationSink:
    """Keeps notifications in memory, newest last."""

    def __init__(self):
        self.notifications: List[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def events(self) -> List[str]:
        return [n.event for n in self.notifications]


class QueueNotificationSink:
    """Feeds notifications into an ``asyncio.Queue`` for a UI consumer.

    Call ``notify`` from the event loop thread only.
    """

    def __init__(self, maxsize: int = 0):
        self.queue: "asyncio.Queue[Notification]" = asyncio.Queue(maxsize=maxsize)

    def notify(self, notification: Notification) -> None:
        try:
            self.queue.put_nowait(notification)
        except asyncio.QueueFull:
            logger.warning("Notification queue full, dropping %s", notification.event)


def emit(sink: NotificationSink, event: str, **payload: Any) -> None:
    """Send an event. Sink failures are logged, never raised."""
    try:
        sink.notify(Notification(event=event, payload=payload))
    except Exception as e:
        logger.warning("Failed to emit %s notification: %s", event, e)
