"""Shared plumbing for services that mutate an agreement.

``JobScopedService._serialized(job_id)`` is the single serialization point for
a job: it takes the in-process job lock, re-reads the job ``FOR UPDATE``, runs
the operation and commits, all or nothing. Storage failures surface as
retryable domain errors instead of raw driver exceptions.
"""

from __future__ import annotations

import uuid  # noqa: TC003
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003
from typing import TYPE_CHECKING

from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm.exc import StaleDataError

from milestone_escrow.config import Settings, get_settings
from milestone_escrow.domain.enums import EscrowStatus, EventType, JobStatus, MilestoneStatus
from milestone_escrow.domain.exceptions import (
    ConcurrentModificationError,
    CounterpartyNotFoundError,
    CurrencyMismatchError,
    JobNotActiveError,
    JobNotFoundError,
    MilestoneNotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from milestone_escrow.domain.money import normalize_currency, to_minor
from milestone_escrow.domain.policy import AgreementContext
from milestone_escrow.infrastructure.database.orm_models import Job, Milestone
from milestone_escrow.infrastructure.database.repositories import (
    ApplicationRepository,
    DiscrepancyRepository,
    EventRepository,
    JobRepository,
    MilestoneRepository,
    OutboxRepository,
    PaymentRepository,
)
from milestone_escrow.infrastructure.locks import JobLockRegistry, get_lock_registry
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.progress_service import ProgressAggregator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.enums import NotificationType

logger = get_logger(__name__)

# Milestones can only be added or funded while the agreement is live.
_ACTIVE_JOB_STATUSES = frozenset({JobStatus.OPEN.value, JobStatus.IN_PROGRESS.value})


@dataclass(frozen=True)
class MilestoneSpec:
    """Employer input for a new milestone, in major units."""

    title: str
    amount: Decimal
    due_date: datetime
    description: str | None = None
    currency: str | None = None


class JobScopedService:
    """Base class for services whose operations are serialized per job."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        locks: JobLockRegistry | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._locks = locks or get_lock_registry()
        self._job_repo = JobRepository(session)
        self._application_repo = ApplicationRepository(session)
        self._milestone_repo = MilestoneRepository(session)
        self._payment_repo = PaymentRepository(session)
        self._event_repo = EventRepository(session)
        self._outbox_repo = OutboxRepository(session)
        self._discrepancy_repo = DiscrepancyRepository(session)
        self._progress = ProgressAggregator(session)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        """Commit on success, roll back on any error, translate storage errors."""
        try:
            yield
            await self._session.commit()
        except StaleDataError as err:
            await self._session.rollback()
            logger.warning("storage.stale_write", error=str(err))
            raise ConcurrentModificationError("Agreement") from err
        except (OperationalError, PoolTimeoutError) as err:
            await self._session.rollback()
            logger.error("storage.unavailable", error=str(err))
            raise StorageUnavailableError() from err
        except Exception:
            await self._session.rollback()
            raise

    @asynccontextmanager
    async def _serialized(self, job_id: uuid.UUID) -> AsyncIterator[Job]:
        """Run the block as the only writer of ``job_id`` and yield the locked job."""
        async with self._locks.hold(job_id, self._settings.job_lock_timeout_seconds):
            async with self._transaction():
                job = await self._job_repo.get_for_update(job_id)
                if job is None:
                    raise JobNotFoundError(str(job_id))
                yield job

    @asynccontextmanager
    async def _serialized_milestone(
        self, milestone_id: uuid.UUID
    ) -> AsyncIterator[tuple[Job, Milestone]]:
        """Like ``_serialized`` but keyed by a milestone; yields (job, milestone)."""
        job_id = await self._milestone_repo.get_job_id(milestone_id)
        if job_id is None:
            raise MilestoneNotFoundError(str(milestone_id))
        async with self._serialized(job_id) as job:
            milestone = await self._milestone_repo.get_by_id(milestone_id, fresh=True)
            if milestone is None:
                # Deleted while we waited for the lock.
                raise MilestoneNotFoundError(str(milestone_id))
            yield job, milestone

    # ------------------------------------------------------------------
    # Agreement helpers
    # ------------------------------------------------------------------

    async def _get_job_or_raise(self, job_id: uuid.UUID) -> Job:
        job = await self._job_repo.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    async def _find_counterparty(self, job: Job, *, repair: bool = False) -> uuid.UUID | None:
        """The accepted application's freelancer.

        The cached ``job.freelancer_id`` is only a read optimization. A
        mismatch is logged as a data-integrity warning and, when the caller
        holds the job lock, repaired.
        """
        accepted = await self._application_repo.get_accepted(job.id, fresh=repair)
        freelancer_id = accepted.freelancer_id if accepted else None
        if job.freelancer_id != freelancer_id:
            logger.warning(
                "agreement.counterparty_mismatch",
                job_id=str(job.id),
                cached=str(job.freelancer_id) if job.freelancer_id else None,
                accepted=str(freelancer_id) if freelancer_id else None,
                repaired=repair,
            )
            if repair:
                job.freelancer_id = freelancer_id
        return freelancer_id

    async def _require_counterparty(self, job: Job, *, repair: bool = False) -> uuid.UUID:
        freelancer_id = await self._find_counterparty(job, repair=repair)
        if freelancer_id is None:
            raise CounterpartyNotFoundError(str(job.id))
        return freelancer_id

    async def _context(self, job: Job, *, repair: bool = False) -> AgreementContext:
        return AgreementContext(
            employer_id=job.employer_id,
            freelancer_id=await self._find_counterparty(job, repair=repair),
        )

    @staticmethod
    def _require_active(job: Job) -> None:
        if job.status not in _ACTIVE_JOB_STATUSES:
            raise JobNotActiveError(str(job.id), job.status)

    async def _new_milestone(self, job: Job, spec: MilestoneSpec, actor_id: uuid.UUID) -> Milestone:
        """Validate ``spec`` against the job and insert a pending, unfunded milestone."""
        title = (spec.title or "").strip()
        if not title:
            raise ValidationError("Milestone title is required", code="MISSING_TITLE")
        if spec.due_date is None:
            raise ValidationError("Milestone due date is required", code="MISSING_DUE_DATE")

        currency = normalize_currency(spec.currency or job.currency)
        if currency != job.currency:
            raise CurrencyMismatchError(expected=job.currency, actual=currency)
        amount_minor = to_minor(spec.amount, currency)
        if amount_minor <= 0:
            raise ValidationError("Amount must be greater than zero", code="INVALID_AMOUNT")

        milestone = Milestone(
            job_id=job.id,
            title=title,
            description=spec.description,
            amount_minor=amount_minor,
            currency=currency,
            due_date=spec.due_date,
            status=MilestoneStatus.PENDING.value,
            escrow_status=EscrowStatus.UNFUNDED.value,
            submission=None,
        )
        milestone = await self._milestone_repo.create(milestone)
        await self._event_repo.record(
            job_id=job.id,
            milestone_id=milestone.id,
            event_type=EventType.MILESTONE_CREATED,
            old_status=None,
            new_status=milestone.status,
            actor=str(actor_id),
            metadata={"amount_minor": amount_minor, "currency": currency},
        )
        return milestone

    async def _notify(
        self,
        recipient_id: uuid.UUID | None,
        notification_type: NotificationType,
        title: str,
        message: str,
        job: Job | None = None,
        milestone: Milestone | None = None,
    ) -> None:
        """Record a notification in the outbox, inside the current transaction."""
        if recipient_id is None:
            return
        await self._outbox_repo.enqueue(
            recipient_id=recipient_id,
            notification_type=notification_type,
            title=title,
            message=message,
            job_id=job.id if job is not None else None,
            milestone_id=milestone.id if milestone is not None else None,
        )

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)
