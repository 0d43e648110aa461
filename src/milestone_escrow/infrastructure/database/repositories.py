"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession, flush after writes and
never manage their own transactions (that's the caller's responsibility).

Reads that feed a write take ``fresh=True``: the row is re-read with
``populate_existing`` so a session that has seen the row before does not
act on a stale copy.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, select, update

from milestone_escrow.domain.enums import (
    ApplicationStatus,
    MilestoneStatus,
    OutboxStatus,
    PaymentType,
)
from milestone_escrow.infrastructure.database.orm_models import (
    AgreementEvent,
    Application,
    Job,
    LedgerDiscrepancy,
    Milestone,
    NotificationOutbox,
    Payment,
    Review,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy import Select
    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.enums import DiscrepancyKind, EventType, NotificationType


def _fresh(stmt: Select, fresh: bool) -> Select:
    return stmt.execution_options(populate_existing=True) if fresh else stmt


class JobRepository:
    """Data access for jobs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, job: Job) -> Job:
        self._session.add(job)
        await self._session.flush()
        return job

    async def get_by_id(self, job_id: uuid.UUID) -> Job | None:
        result = await self._session.execute(select(Job).where(Job.id == job_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, job_id: uuid.UUID) -> Job | None:
        """Lock the job row for the rest of the transaction and reload it."""
        result = await self._session.execute(
            select(Job)
            .where(Job.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def save(self, job: Job) -> Job:
        """Flush pending changes; the version column guards lost updates."""
        await self._session.flush()
        return job


class ApplicationRepository:
    """Data access for job applications."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, application: Application) -> Application:
        self._session.add(application)
        await self._session.flush()
        return application

    async def get_by_id(
        self, application_id: uuid.UUID, *, fresh: bool = False
    ) -> Application | None:
        result = await self._session.execute(
            _fresh(select(Application).where(Application.id == application_id), fresh)
        )
        return result.scalar_one_or_none()

    async def get_by_job_and_freelancer(
        self, job_id: uuid.UUID, freelancer_id: uuid.UUID
    ) -> Application | None:
        result = await self._session.execute(
            select(Application).where(
                Application.job_id == job_id,
                Application.freelancer_id == freelancer_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_accepted(self, job_id: uuid.UUID, *, fresh: bool = False) -> Application | None:
        """The job's accepted application, if any. The source of truth for the freelancer."""
        result = await self._session.execute(
            _fresh(
                select(Application).where(
                    Application.job_id == job_id,
                    Application.status == ApplicationStatus.ACCEPTED.value,
                ),
                fresh,
            )
        )
        return result.scalar_one_or_none()

    async def list_by_job(self, job_id: uuid.UUID) -> list[Application]:
        result = await self._session.execute(
            select(Application)
            .where(Application.job_id == job_id)
            .order_by(Application.created_at.asc())
        )
        return list(result.scalars().all())

    async def update_status(
        self, application: Application, status: ApplicationStatus
    ) -> Application:
        application.status = status.value
        await self._session.flush()
        return application


class MilestoneRepository:
    """Data access for milestones and their embedded submission."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, milestone: Milestone) -> Milestone:
        self._session.add(milestone)
        await self._session.flush()
        return milestone

    async def get_by_id(self, milestone_id: uuid.UUID, *, fresh: bool = False) -> Milestone | None:
        result = await self._session.execute(
            _fresh(select(Milestone).where(Milestone.id == milestone_id), fresh)
        )
        return result.scalar_one_or_none()

    async def get_job_id(self, milestone_id: uuid.UUID) -> uuid.UUID | None:
        """Resolve a milestone's job without loading the milestone itself."""
        result = await self._session.execute(
            select(Milestone.job_id).where(Milestone.id == milestone_id)
        )
        return result.scalar_one_or_none()

    async def list_by_job(self, job_id: uuid.UUID, *, fresh: bool = False) -> list[Milestone]:
        """All milestones of a job, earliest due date first."""
        result = await self._session.execute(
            _fresh(
                select(Milestone)
                .where(Milestone.job_id == job_id)
                .order_by(Milestone.due_date.asc(), Milestone.created_at.asc()),
                fresh,
            )
        )
        return list(result.scalars().all())

    async def list_statuses(self, job_id: uuid.UUID) -> list[str]:
        result = await self._session.execute(
            select(Milestone.status).where(Milestone.job_id == job_id)
        )
        return list(result.scalars().all())

    async def count_incomplete(self, job_id: uuid.UUID) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(Milestone)
            .where(
                Milestone.job_id == job_id,
                Milestone.status != MilestoneStatus.COMPLETED.value,
            )
        )
        return int(result.scalar_one())

    async def save(self, milestone: Milestone) -> Milestone:
        await self._session.flush()
        return milestone

    async def delete(self, milestone: Milestone) -> None:
        await self._session.delete(milestone)
        await self._session.flush()


class PaymentRepository:
    """Data access for the payment ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, payment: Payment) -> Payment:
        self._session.add(payment)
        await self._session.flush()
        return payment

    async def get_by_id(self, payment_id: uuid.UUID) -> Payment | None:
        result = await self._session.execute(select(Payment).where(Payment.id == payment_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, payment_id: uuid.UUID) -> Payment | None:
        result = await self._session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_job(self, job_id: uuid.UUID) -> list[Payment]:
        result = await self._session.execute(
            select(Payment)
            .where(Payment.job_id == job_id, Payment.type == PaymentType.JOB_PAYMENT.value)
            .order_by(Payment.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_for_user(self, user_id: uuid.UUID, limit: int = 100) -> list[Payment]:
        """Payment history where the user is either party, newest first."""
        result = await self._session.execute(
            select(Payment)
            .where(or_(Payment.employer_id == user_id, Payment.freelancer_id == user_id))
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def save(self, payment: Payment) -> Payment:
        await self._session.flush()
        return payment


class ReviewRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, review: Review) -> Review:
        self._session.add(review)
        await self._session.flush()
        return review

    async def get_by_job_and_reviewer(
        self, job_id: uuid.UUID, reviewer_id: uuid.UUID
    ) -> Review | None:
        result = await self._session.execute(
            select(Review).where(Review.job_id == job_id, Review.reviewer_id == reviewer_id)
        )
        return result.scalar_one_or_none()


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        job_id: uuid.UUID | None,
        event_type: EventType,
        old_status: str | None,
        new_status: str | None,
        actor: str = "SYSTEM",
        milestone_id: uuid.UUID | None = None,
        payment_id: uuid.UUID | None = None,
        metadata: dict | None = None,
    ) -> AgreementEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = AgreementEvent(
            job_id=job_id,
            milestone_id=milestone_id,
            payment_id=payment_id,
            event_type=event_type.value,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_job(self, job_id: uuid.UUID) -> list[AgreementEvent]:
        """Fetch all events for a job in chronological order."""
        result = await self._session.execute(
            select(AgreementEvent)
            .where(AgreementEvent.job_id == job_id)
            .order_by(AgreementEvent.created_at.asc())
        )
        return list(result.scalars().all())


class OutboxRepository:
    """Data access for the notification outbox."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(
        self,
        recipient_id: uuid.UUID,
        notification_type: NotificationType,
        title: str,
        message: str,
        job_id: uuid.UUID | None = None,
        milestone_id: uuid.UUID | None = None,
    ) -> NotificationOutbox:
        row = NotificationOutbox(
            recipient_id=recipient_id,
            type=notification_type.value,
            title=title,
            message=message,
            job_id=job_id,
            milestone_id=milestone_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_pending(self, limit: int = 100) -> list[NotificationOutbox]:
        result = await self._session.execute(
            select(NotificationOutbox)
            .where(NotificationOutbox.status == OutboxStatus.PENDING.value)
            .order_by(NotificationOutbox.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_recipient(self, recipient_id: uuid.UUID) -> list[NotificationOutbox]:
        result = await self._session.execute(
            select(NotificationOutbox)
            .where(NotificationOutbox.recipient_id == recipient_id)
            .order_by(NotificationOutbox.created_at.asc())
        )
        return list(result.scalars().all())

    async def mark_delivered(self, row: NotificationOutbox, attempts: int) -> None:
        row.status = OutboxStatus.DELIVERED.value
        row.attempts += attempts
        row.delivered_at = datetime.now(UTC)
        row.last_error = None
        await self._session.flush()

    async def mark_failed(self, row: NotificationOutbox, attempts: int, error: str) -> None:
        row.status = OutboxStatus.FAILED.value
        row.attempts += attempts
        row.last_error = error[:2000]
        await self._session.flush()


class DiscrepancyRepository:
    """Data access for the reconciliation queue."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        job_id: uuid.UUID,
        kind: DiscrepancyKind,
        detail: str,
        payment_id: uuid.UUID | None = None,
        expected_escrow_minor: int | None = None,
        actual_escrow_minor: int | None = None,
        expected_paid_minor: int | None = None,
        actual_paid_minor: int | None = None,
    ) -> LedgerDiscrepancy:
        row = LedgerDiscrepancy(
            job_id=job_id,
            payment_id=payment_id,
            kind=kind.value,
            detail=detail,
            expected_escrow_minor=expected_escrow_minor,
            actual_escrow_minor=actual_escrow_minor,
            expected_paid_minor=expected_paid_minor,
            actual_paid_minor=actual_paid_minor,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_discrepancies(
        self, job_id: uuid.UUID | None = None, resolved: bool | None = None
    ) -> list[LedgerDiscrepancy]:
        stmt = select(LedgerDiscrepancy).order_by(LedgerDiscrepancy.created_at.desc())
        if job_id is not None:
            stmt = stmt.where(LedgerDiscrepancy.job_id == job_id)
        if resolved is not None:
            stmt = stmt.where(LedgerDiscrepancy.resolved == resolved)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def resolve_for_payment(self, payment_id: uuid.UUID) -> int:
        """Close every open discrepancy about ``payment_id``. Returns how many."""
        result = await self._session.execute(
            update(LedgerDiscrepancy)
            .where(
                LedgerDiscrepancy.payment_id == payment_id,
                LedgerDiscrepancy.resolved.is_(False),
            )
            .values(resolved=True, resolved_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
