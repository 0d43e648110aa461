"""Agreement Registry: a Job and the single Application that binds it.

Every milestone and ledger operation resolves the freelancer through the
accepted Application, never through the cached ``Job.freelancer_id``.
Acceptance is checked and set under the job's serialization point and is
backed by a partial unique index, so two concurrent accepts cannot both win.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal  # noqa: TC003
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from milestone_escrow.domain.enums import (
    ApplicationStatus,
    EventType,
    JobStatus,
    NotificationType,
)
from milestone_escrow.domain.exceptions import (
    AlreadyAppliedError,
    AlreadyReviewedError,
    ApplicationAlreadyAcceptedError,
    ApplicationNotFoundError,
    EscrowStillHeldError,
    IncompleteMilestonesError,
    InvalidAmountError,
    InvalidTransitionError,
    ValidationError,
)
from milestone_escrow.domain.money import normalize_currency, to_minor
from milestone_escrow.domain.policy import AgreementContext, Operation, authorize
from milestone_escrow.domain.state_machine import JobStateMachine, fire_transition
from milestone_escrow.infrastructure.database.orm_models import Application, Job, Review
from milestone_escrow.infrastructure.database.repositories import ReviewRepository
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.base import JobScopedService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.config import Settings
    from milestone_escrow.domain.policy import Actor
    from milestone_escrow.infrastructure.locks import JobLockRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class AgreementView:
    """Read model of an agreement: the job plus its resolved counterparty."""

    job: Job
    freelancer_id: uuid.UUID | None


@dataclass(frozen=True)
class ClosingReview:
    """The employer's closing review of the freelancer."""

    rating: int
    comment: str
    skills: tuple[str, ...] = ()
    communication: int | None = None
    quality: int | None = None
    timeliness: int | None = None


def _check_rating(name: str, value: int | None, required: bool = False) -> None:
    if value is None:
        if required:
            raise ValidationError(f"{name} is required", code="INVALID_RATING")
        return
    if not 1 <= value <= 5:
        raise ValidationError(f"{name} must be between 1 and 5", code="INVALID_RATING")


class AgreementService(JobScopedService):
    """Jobs, applications and the agreement they form."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        locks: JobLockRegistry | None = None,
    ) -> None:
        super().__init__(session, settings=settings, locks=locks)
        self._review_repo = ReviewRepository(session)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        actor: Actor,
        title: str,
        description: str | None = None,
        budget: Decimal | None = None,
        currency: str | None = None,
    ) -> Job:
        """Create a job in OPEN state, owned by the calling employer."""
        authorize(actor, Operation.CREATE_JOB)
        title = (title or "").strip()
        if not title:
            raise ValidationError("Job title is required", code="MISSING_TITLE")
        currency = normalize_currency(currency or self._settings.default_currency)
        budget_minor = None
        if budget is not None:
            budget_minor = to_minor(budget, currency)
            if budget_minor <= 0:
                raise InvalidAmountError("Budget must be greater than zero")

        async with self._transaction():
            job = await self._job_repo.create(
                Job(
                    employer_id=actor.user_id,
                    title=title,
                    description=description,
                    budget_minor=budget_minor,
                    currency=currency,
                    status=JobStatus.OPEN.value,
                )
            )
            await self._event_repo.record(
                job_id=job.id,
                event_type=EventType.JOB_CREATED,
                old_status=None,
                new_status=job.status,
                actor=str(actor.user_id),
                metadata={"title": title, "budget_minor": budget_minor, "currency": currency},
            )

        logger.info("agreement.job_created", job_id=str(job.id), employer_id=str(actor.user_id))
        return job

    async def get_agreement(self, job_id: uuid.UUID, actor: Actor) -> AgreementView:
        job = await self._get_job_or_raise(job_id)
        context = await self._context(job)
        authorize(actor, Operation.VIEW_AGREEMENT, context)
        return AgreementView(job=job, freelancer_id=context.freelancer_id)

    async def resolve_counterparty(self, job_id: uuid.UUID) -> uuid.UUID:
        """Return the accepted application's freelancer.

        Raises:
            JobNotFoundError: If the job does not exist.
            CounterpartyNotFoundError: If no application has been accepted.
        """
        job = await self._get_job_or_raise(job_id)
        return await self._require_counterparty(job)

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    async def apply_to_job(
        self,
        job_id: uuid.UUID,
        actor: Actor,
        cover_letter: str,
        expected_rate: Decimal | None = None,
    ) -> Application:
        authorize(actor, Operation.APPLY)
        cover_letter = (cover_letter or "").strip()
        if not cover_letter:
            raise ValidationError("Cover letter is required", code="MISSING_COVER_LETTER")

        async with self._serialized(job_id) as job:
            if job.status != JobStatus.OPEN:
                raise ValidationError(
                    "This job is no longer accepting applications", code="JOB_NOT_OPEN"
                )
            existing = await self._application_repo.get_by_job_and_freelancer(
                job.id, actor.user_id
            )
            if existing is not None:
                raise AlreadyAppliedError(str(job.id))

            rate_minor = None
            if expected_rate is not None:
                rate_minor = to_minor(expected_rate, job.currency)
            try:
                application = await self._application_repo.create(
                    Application(
                        job_id=job.id,
                        freelancer_id=actor.user_id,
                        cover_letter=cover_letter,
                        expected_rate_minor=rate_minor,
                        status=ApplicationStatus.PENDING.value,
                    )
                )
            except IntegrityError as err:
                raise AlreadyAppliedError(str(job.id)) from err

            await self._event_repo.record(
                job_id=job.id,
                event_type=EventType.APPLICATION_SUBMITTED,
                old_status=None,
                new_status=application.status,
                actor=str(actor.user_id),
                metadata={"application_id": str(application.id)},
            )

        logger.info(
            "agreement.application_submitted",
            job_id=str(job_id),
            application_id=str(application.id),
        )
        return application

    async def accept_application(
        self, job_id: uuid.UUID, application_id: uuid.UUID, actor: Actor
    ) -> Application:
        """Accept a pending application and move the job to IN-PROGRESS.

        Raises:
            ApplicationAlreadyAcceptedError: If the job already has a counterparty.
        """
        async with self._serialized(job_id) as job:
            context = await self._context(job, repair=True)
            authorize(actor, Operation.ACCEPT_APPLICATION, context)

            application = await self._get_application_or_raise(job, application_id)
            if context.freelancer_id is not None:
                raise ApplicationAlreadyAcceptedError(str(job.id))
            if application.status != ApplicationStatus.PENDING:
                raise InvalidTransitionError(
                    application.status, ApplicationStatus.ACCEPTED.value, actor.role.value
                )

            old_job_status = job.status
            job.status = fire_transition(JobStateMachine, job.status, "start", actor.role.value)
            application.status = ApplicationStatus.ACCEPTED.value
            job.freelancer_id = application.freelancer_id
            try:
                await self._session.flush()
            except IntegrityError as err:
                # The partial unique index caught a concurrent acceptance.
                raise ApplicationAlreadyAcceptedError(str(job.id)) from err

            await self._event_repo.record(
                job_id=job.id,
                event_type=EventType.APPLICATION_ACCEPTED,
                old_status=old_job_status,
                new_status=job.status,
                actor=str(actor.user_id),
                metadata={
                    "application_id": str(application.id),
                    "freelancer_id": str(application.freelancer_id),
                },
            )
            await self._notify(
                application.freelancer_id,
                NotificationType.APPLICATION_ACCEPTED,
                "Application Accepted",
                f'Your application for "{job.title}" has been accepted',
                job=job,
            )

        logger.info(
            "agreement.application_accepted",
            job_id=str(job_id),
            application_id=str(application_id),
            freelancer_id=str(application.freelancer_id),
        )
        return application

    async def reject_application(
        self, job_id: uuid.UUID, application_id: uuid.UUID, actor: Actor
    ) -> Application:
        async with self._serialized(job_id) as job:
            authorize(actor, Operation.REJECT_APPLICATION, AgreementContext(job.employer_id))
            application = await self._get_application_or_raise(job, application_id)
            await self._close_application(
                job, application, actor, ApplicationStatus.REJECTED, EventType.APPLICATION_REJECTED
            )
        return application

    async def withdraw_application(
        self, job_id: uuid.UUID, application_id: uuid.UUID, actor: Actor
    ) -> Application:
        async with self._serialized(job_id) as job:
            application = await self._get_application_or_raise(job, application_id)
            authorize(
                actor,
                Operation.WITHDRAW_APPLICATION,
                AgreementContext(job.employer_id, application.freelancer_id),
            )
            await self._close_application(
                job,
                application,
                actor,
                ApplicationStatus.WITHDRAWN,
                EventType.APPLICATION_WITHDRAWN,
            )
        return application

    async def _close_application(
        self,
        job: Job,
        application: Application,
        actor: Actor,
        target: ApplicationStatus,
        event_type: EventType,
    ) -> None:
        if application.status != ApplicationStatus.PENDING:
            raise InvalidTransitionError(application.status, target.value, actor.role.value)
        old_status = application.status
        await self._application_repo.update_status(application, target)
        await self._event_repo.record(
            job_id=job.id,
            event_type=event_type,
            old_status=old_status,
            new_status=application.status,
            actor=str(actor.user_id),
            metadata={"application_id": str(application.id)},
        )
        logger.info(
            "agreement.application_closed",
            job_id=str(job.id),
            application_id=str(application.id),
            status=application.status,
        )

    async def _get_application_or_raise(self, job: Job, application_id: uuid.UUID) -> Application:
        application = await self._application_repo.get_by_id(application_id, fresh=True)
        if application is None or application.job_id != job.id:
            raise ApplicationNotFoundError(str(application_id))
        return application

    # ------------------------------------------------------------------
    # Closing and cancellation
    # ------------------------------------------------------------------

    async def close_job(self, job_id: uuid.UUID, actor: Actor, review: ClosingReview) -> Job:
        """Close a job once every milestone is completed and no escrow is held.

        Records the employer's closing review of the freelancer.
        """
        _check_rating("Rating", review.rating, required=True)
        for name, value in (
            ("Communication", review.communication),
            ("Quality", review.quality),
            ("Timeliness", review.timeliness),
        ):
            _check_rating(name, value)
        comment = (review.comment or "").strip()
        if not comment:
            raise ValidationError("Review comment is required", code="MISSING_COMMENT")

        async with self._serialized(job_id) as job:
            context = await self._context(job, repair=True)
            authorize(actor, Operation.CLOSE_JOB, context)
            freelancer_id = await self._require_counterparty(job)

            new_status = fire_transition(JobStateMachine, job.status, "close", actor.role.value)
            remaining = await self._milestone_repo.count_incomplete(job.id)
            if remaining:
                raise IncompleteMilestonesError(str(job.id), remaining)
            if job.escrow_balance_minor > 0:
                raise EscrowStillHeldError(str(job.id), job.escrow_balance_minor)
            if await self._review_repo.get_by_job_and_reviewer(job.id, actor.user_id):
                raise AlreadyReviewedError(str(job.id))

            await self._review_repo.create(
                Review(
                    job_id=job.id,
                    reviewer_id=actor.user_id,
                    reviewee_id=freelancer_id,
                    rating=review.rating,
                    comment=comment,
                    skills=list(review.skills),
                    communication=review.communication,
                    quality=review.quality,
                    timeliness=review.timeliness,
                )
            )

            old_status = job.status
            job.status = new_status
            job.completed_at = self._now()
            await self._job_repo.save(job)

            await self._event_repo.record(
                job_id=job.id,
                event_type=EventType.JOB_CLOSED,
                old_status=old_status,
                new_status=job.status,
                actor=str(actor.user_id),
                metadata={"rating": review.rating},
            )
            await self._notify(
                freelancer_id,
                NotificationType.PROJECT_COMPLETED,
                "Project Completed",
                f'The project "{job.title}" has been marked as completed',
                job=job,
            )
            await self._notify(
                freelancer_id,
                NotificationType.REVIEW_RECEIVED,
                "New Review",
                f'You received a {review.rating}-star review for "{job.title}"',
                job=job,
            )

        logger.info("agreement.job_closed", job_id=str(job_id), rating=review.rating)
        return job

    async def cancel_job(self, job_id: uuid.UUID, actor: Actor) -> Job:
        """Cancel an open or in-progress job that holds no escrow."""
        async with self._serialized(job_id) as job:
            context = await self._context(job, repair=True)
            authorize(actor, Operation.CANCEL_JOB, context)

            new_status = fire_transition(JobStateMachine, job.status, "cancel", actor.role.value)
            if job.escrow_balance_minor > 0:
                raise EscrowStillHeldError(str(job.id), job.escrow_balance_minor)

            old_status = job.status
            job.status = new_status
            await self._job_repo.save(job)
            await self._event_repo.record(
                job_id=job.id,
                event_type=EventType.JOB_CANCELLED,
                old_status=old_status,
                new_status=job.status,
                actor=str(actor.user_id),
            )

        logger.info("agreement.job_cancelled", job_id=str(job_id), actor_role=actor.role.value)
        return job
