"""Notification sink protocol.

Lifecycle events are written to the outbox inside the triggering transaction
and handed to a sink afterwards. This is a Protocol (structural subtyping), so
sinks only need to match the shape.

The domain layer has no imports from Redis or any other transport.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime  # noqa: TC003
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class NotificationEvent:
    """A lifecycle event addressed to one user.

    Attributes:
        event_id: UUID of the outbox row, stable across delivery attempts.
        recipient_id: UUID of the user to notify.
        type: NotificationType value (e.g. "payment_released").
        title: Short headline for the inbox.
        message: Human-readable body.
        job_id: Related job, if any.
        milestone_id: Related milestone, if any.
        created_at: When the triggering transaction recorded the event.
    """

    event_id: str
    recipient_id: str
    type: str
    title: str
    message: str
    job_id: str | None = None
    milestone_id: str | None = None
    created_at: datetime | None = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Flat string mapping, suitable for a Redis stream entry or a log line."""
        return {
            "event_id": self.event_id,
            "recipient_id": self.recipient_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "job_id": self.job_id or "",
            "milestone_id": self.milestone_id or "",
            "created_at": self.created_at.isoformat() if self.created_at else "",
        }


@runtime_checkable
class NotificationSink(Protocol):
    """Protocol that all notification transports must satisfy.

    Concrete implementations live in ``milestone_escrow.notifications.sinks``.
    """

    async def deliver(self, event: NotificationEvent) -> None:
        """Deliver one event.

        Raises:
            DownstreamError: On a transient transport failure. The dispatcher
                retries these with backoff.
        """
        ...
