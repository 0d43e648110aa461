"""Notification sink implementations.

Two transports:
    - LoggingNotificationSink:      Writes each event as a structured log line.
    - RedisStreamNotificationSink:  XADDs each event to a capped Redis stream
                                    that the inbox subsystem consumes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from milestone_escrow.config import get_settings
from milestone_escrow.domain.exceptions import DownstreamError
from milestone_escrow.infrastructure.redis_client import append_to_stream
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from milestone_escrow.domain.notifications import NotificationEvent

logger = get_logger(__name__)


class LoggingNotificationSink:
    """Sink for development and tests: every event becomes a log line."""

    async def deliver(self, event: NotificationEvent) -> None:
        logger.info("notification.delivered", sink="log", **event.to_dict())


class RedisStreamNotificationSink:
    """Publishes events to a Redis stream, one entry per event."""

    def __init__(self, stream_key: str | None = None, maxlen: int | None = None) -> None:
        settings = get_settings()
        self._stream_key = stream_key or settings.notification_stream_key
        self._maxlen = maxlen or settings.notification_stream_maxlen

    async def deliver(self, event: NotificationEvent) -> None:
        try:
            entry_id = await append_to_stream(self._stream_key, event.to_dict(), self._maxlen)
        except (RedisError, RuntimeError) as exc:
            raise DownstreamError(
                f"Could not publish notification {event.event_id}: {exc}",
                code="NOTIFICATION_SINK_UNAVAILABLE",
            ) from exc
        logger.debug(
            "notification.delivered",
            sink="redis",
            stream=self._stream_key,
            entry_id=entry_id,
            event_id=event.event_id,
        )
