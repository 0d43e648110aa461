"""Notification sinks, their factory and the outbox dispatcher.

Two sinks:
    - LoggingNotificationSink:      Structured log line per event (default)
    - RedisStreamNotificationSink:  XADD to a capped Redis stream

The NotificationSinkFactory creates the configured sink by name
(``Settings.notification_sink``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from milestone_escrow.config import Settings, get_settings
from milestone_escrow.domain.notifications import NotificationEvent, NotificationSink
from milestone_escrow.infrastructure.redis_client import is_redis_available
from milestone_escrow.logging_config import get_logger
from milestone_escrow.notifications.dispatcher import DispatchReport, NotificationDispatcher
from milestone_escrow.notifications.sinks import (
    LoggingNotificationSink,
    RedisStreamNotificationSink,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


class NotificationSinkFactory:
    """Factory that creates a notification sink by name.

    Usage:
        sink = NotificationSinkFactory.create("redis")
        await sink.deliver(event)
    """

    _registry: dict[str, type] = {
        "log": LoggingNotificationSink,
        "redis": RedisStreamNotificationSink,
    }

    @classmethod
    def create(cls, name: str) -> NotificationSink:
        """Create a sink instance.

        Raises:
            ValueError: If the name is unknown.
        """
        sink_class = cls._registry.get(name)
        if sink_class is None:
            raise ValueError(
                f"Unknown notification sink: '{name}'. "
                f"Valid sinks: {list(cls._registry.keys())}"
            )
        return sink_class()

    @classmethod
    def get_supported_types(cls) -> list[str]:
        """Return the list of supported sink names."""
        return list(cls._registry.keys())


def build_dispatcher(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
) -> NotificationDispatcher:
    """Dispatcher for the configured sink. Uses the log sink while Redis is down."""
    settings = settings or get_settings()
    name = settings.notification_sink
    if name == "redis" and not is_redis_available():
        logger.warning("notification.redis_unavailable", fallback="log")
        name = "log"
    return NotificationDispatcher(
        session_factory, NotificationSinkFactory.create(name), settings=settings
    )


__all__ = [
    "DispatchReport",
    "LoggingNotificationSink",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationSink",
    "NotificationSinkFactory",
    "RedisStreamNotificationSink",
    "build_dispatcher",
]
