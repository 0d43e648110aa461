"""Outbox dispatcher: delivers recorded notifications after the fact.

Lifecycle events are written to ``notification_outbox`` inside the
transaction that caused them. The dispatcher runs afterwards (as a FastAPI
background task or from the admin endpoint), hands each pending row to the
configured sink and records the outcome on the row.

Delivery is fire-and-forget: transient sink failures are retried with
exponential backoff, exhausted rows are marked FAILED, and nothing here ever
raises into the operation that produced the event.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from milestone_escrow.config import Settings, get_settings
from milestone_escrow.domain.exceptions import DownstreamError
from milestone_escrow.domain.notifications import NotificationEvent
from milestone_escrow.infrastructure.database.repositories import OutboxRepository
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from milestone_escrow.domain.notifications import NotificationSink
    from milestone_escrow.infrastructure.database.orm_models import NotificationOutbox

logger = get_logger(__name__)

# One dispatch pass at a time per process.
_dispatch_lock = asyncio.Lock()


@dataclass(frozen=True)
class DispatchReport:
    delivered: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.delivered + self.failed


def _to_event(row: NotificationOutbox) -> NotificationEvent:
    return NotificationEvent(
        event_id=str(row.id),
        recipient_id=str(row.recipient_id),
        type=row.type,
        title=row.title,
        message=row.message,
        job_id=str(row.job_id) if row.job_id else None,
        milestone_id=str(row.milestone_id) if row.milestone_id else None,
        created_at=row.created_at,
    )


class NotificationDispatcher:
    """Drains the notification outbox into a NotificationSink."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sink: NotificationSink,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sink = sink
        self._settings = settings or get_settings()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(DownstreamError),
            stop=stop_after_attempt(self._settings.notification_max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.notification_retry_min_seconds,
                min=self._settings.notification_retry_min_seconds,
                max=self._settings.notification_retry_max_seconds,
            ),
            reraise=True,
        )

    async def deliver(self, event: NotificationEvent) -> tuple[int, str | None]:
        """Deliver one event with retries.

        Returns:
            (attempts made, last error or None on success)
        """
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts += 1
                    await self._sink.deliver(event)
        except DownstreamError as exc:
            return attempts, exc.message
        except Exception as exc:
            logger.exception("notification.sink_crashed", event_id=event.event_id)
            return attempts, f"{type(exc).__name__}: {exc}"
        return attempts, None

    async def dispatch_pending(self) -> DispatchReport:
        """Deliver up to ``notification_batch_size`` pending rows. Never raises."""
        async with _dispatch_lock:
            delivered = 0
            failed = 0
            try:
                async with self._session_factory() as session:
                    repo = OutboxRepository(session)
                    rows = await repo.list_pending(limit=self._settings.notification_batch_size)
                    for row in rows:
                        attempts, error = await self.deliver(_to_event(row))
                        if error is None:
                            await repo.mark_delivered(row, attempts)
                            delivered += 1
                            continue
                        await repo.mark_failed(row, attempts, error)
                        failed += 1
                        logger.error(
                            "notification.delivery_exhausted",
                            outbox_id=str(row.id),
                            type=row.type,
                            attempts=attempts,
                            error=error,
                        )
                    await session.commit()
            except SQLAlchemyError:
                logger.exception("notification.dispatch_failed")
                return DispatchReport(delivered=0, failed=0)

        if delivered or failed:
            logger.info("notification.dispatched", delivered=delivered, failed=failed)
        return DispatchReport(delivered=delivered, failed=failed)
