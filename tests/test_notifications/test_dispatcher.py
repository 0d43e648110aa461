"""Tests for the outbox dispatcher: delivery, retries and exhausted rows."""

from __future__ import annotations

import pytest

from milestone_escrow.domain.exceptions import DownstreamError
from milestone_escrow.domain.notifications import NotificationEvent
from milestone_escrow.infrastructure.database.repositories import OutboxRepository
from milestone_escrow.notifications import NotificationDispatcher


class RecordingSink:
    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or DownstreamError("stream unavailable")
        self.calls = 0
        self.delivered: list[NotificationEvent] = []

    async def deliver(self, event: NotificationEvent) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        self.delivered.append(event)


def _event() -> NotificationEvent:
    return NotificationEvent(
        event_id="evt-1",
        recipient_id="user-1",
        type="payment_released",
        title="Payment Released",
        message="Payment of 500.00 USD has been released",
    )


class TestDeliver:
    @pytest.mark.asyncio
    async def test_first_try(self, session_factory, settings) -> None:
        sink = RecordingSink()
        dispatcher = NotificationDispatcher(session_factory, sink, settings=settings)
        assert await dispatcher.deliver(_event()) == (1, None)
        assert [e.event_id for e in sink.delivered] == ["evt-1"]

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, session_factory, settings) -> None:
        sink = RecordingSink(failures=1)
        dispatcher = NotificationDispatcher(session_factory, sink, settings=settings)
        assert await dispatcher.deliver(_event()) == (2, None)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, session_factory, settings) -> None:
        sink = RecordingSink(failures=10)
        dispatcher = NotificationDispatcher(session_factory, sink, settings=settings)
        attempts, error = await dispatcher.deliver(_event())
        assert attempts == settings.notification_max_attempts
        assert error == "stream unavailable"

    @pytest.mark.asyncio
    async def test_unexpected_error_not_retried(self, session_factory, settings) -> None:
        sink = RecordingSink(failures=10, error=RuntimeError("boom"))
        dispatcher = NotificationDispatcher(session_factory, sink, settings=settings)
        attempts, error = await dispatcher.deliver(_event())
        assert attempts == 1
        assert error == "RuntimeError: boom"


class TestDispatchPending:
    @pytest.mark.asyncio
    async def test_marks_rows_delivered(
        self, session, session_factory, settings, job, fund, freelancer
    ) -> None:
        await fund(job)
        sink = RecordingSink()
        dispatcher = NotificationDispatcher(session_factory, sink, settings=settings)

        report = await dispatcher.dispatch_pending()

        # application_accepted and milestone_funded
        assert report.delivered == 2
        assert report.failed == 0
        assert {e.type for e in sink.delivered} == {"application_accepted", "milestone_funded"}

        session.expire_all()
        rows = await OutboxRepository(session).list_for_recipient(freelancer.user_id)
        assert {r.status for r in rows} == {"delivered"}
        assert all(r.attempts == 1 and r.delivered_at is not None for r in rows)

        assert (await dispatcher.dispatch_pending()).total == 0

    @pytest.mark.asyncio
    async def test_exhausted_rows_marked_failed(
        self, session, session_factory, settings, job, freelancer
    ) -> None:
        dispatcher = NotificationDispatcher(
            session_factory, RecordingSink(failures=100), settings=settings
        )

        report = await dispatcher.dispatch_pending()

        assert report.delivered == 0
        assert report.failed == 1
        session.expire_all()
        [row] = await OutboxRepository(session).list_for_recipient(freelancer.user_id)
        assert row.status == "failed"
        assert row.attempts == settings.notification_max_attempts
        assert row.last_error == "stream unavailable"

    @pytest.mark.asyncio
    async def test_sink_failure_never_touches_the_ledger(
        self, svc, session_factory, settings, job, fund, employer
    ) -> None:
        await fund(job)
        dispatcher = NotificationDispatcher(
            session_factory, RecordingSink(failures=100), settings=settings
        )
        await dispatcher.dispatch_pending()

        balance = await svc.escrow.get_escrow_balance(job.id, employer)
        assert balance.escrow_balance_minor == 50_000
