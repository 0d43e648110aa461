"""Milestone Store: creation, direct status changes and deletion.

Direct status changes follow the role table:

    pending      -> in-progress   freelancer (the accepted counterparty)
    in-progress  -> completed     employer, only for an approved submission
                                  or a milestone that was never escrowed

Review-driven completion lives in ReviewService. Funding lives in
EscrowService. Every mutation here recomputes job progress before commit.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from milestone_escrow.domain.enums import (
    EscrowStatus,
    EventType,
    MilestoneStatus,
    NotificationType,
    ReviewStatus,
)
from milestone_escrow.domain.exceptions import (
    AlreadyFundedError,
    EscrowNotFundedError,
    InvalidTransitionError,
    MilestoneNotFoundError,
)
from milestone_escrow.domain.policy import AgreementContext, Operation, authorize
from milestone_escrow.domain.state_machine import (
    MilestoneStateMachine,
    fire_transition,
    resolve_status_change,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.base import JobScopedService

if TYPE_CHECKING:
    import uuid

    from milestone_escrow.domain.policy import Actor
    from milestone_escrow.infrastructure.database.orm_models import Milestone
    from milestone_escrow.services.base import MilestoneSpec

logger = get_logger(__name__)

_STATUS_OPERATIONS = {
    "start_work": (Operation.START_MILESTONE, EventType.MILESTONE_STARTED),
    "complete_manually": (Operation.COMPLETE_MILESTONE, EventType.MILESTONE_COMPLETED),
}


class MilestoneService(JobScopedService):
    """Manages milestones that are not moved by funding or review."""

    async def create_milestone(
        self, job_id: uuid.UUID, actor: Actor, spec: MilestoneSpec
    ) -> Milestone:
        """Create a pending, unfunded milestone on the employer's job."""
        async with self._serialized(job_id) as job:
            authorize(actor, Operation.CREATE_MILESTONE, AgreementContext(job.employer_id))
            self._require_active(job)
            milestone = await self._new_milestone(job, spec, actor.user_id)
            await self._progress.recompute(job)

        logger.info(
            "milestone.created",
            job_id=str(job_id),
            milestone_id=str(milestone.id),
            amount_minor=milestone.amount_minor,
        )
        return milestone

    async def list_milestones(self, job_id: uuid.UUID, actor: Actor) -> list[Milestone]:
        """All of a job's milestones, earliest due date first."""
        job = await self._get_job_or_raise(job_id)
        authorize(actor, Operation.VIEW_AGREEMENT, await self._context(job))
        return await self._milestone_repo.list_by_job(job.id)

    async def get_milestone(self, milestone_id: uuid.UUID, actor: Actor) -> Milestone:
        milestone = await self._milestone_repo.get_by_id(milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        job = await self._get_job_or_raise(milestone.job_id)
        authorize(actor, Operation.VIEW_AGREEMENT, await self._context(job))
        return milestone

    async def update_milestone_status(
        self, milestone_id: uuid.UUID, actor: Actor, target_status: str
    ) -> Milestone:
        """Apply a direct status change requested by one of the parties.

        Raises:
            InvalidTransitionError: If the (from, to, role) triple is not allowed.
            EscrowNotFundedError: If work may only start on funded milestones.
        """
        async with self._serialized_milestone(milestone_id) as (job, milestone):
            event_name = resolve_status_change(milestone.status, target_status, actor.role)
            operation, event_type = _STATUS_OPERATIONS[event_name]
            context = await self._context(job, repair=True)
            authorize(actor, operation, context)
            self._require_active(job)

            if event_name == "start_work":
                if (
                    self._settings.require_funded_escrow_to_start
                    and milestone.escrow_status != EscrowStatus.FUNDED
                ):
                    raise EscrowNotFundedError(str(milestone.id))
            elif not self._can_complete_manually(milestone):
                raise InvalidTransitionError(milestone.status, target_status, actor.role.value)

            old_status = milestone.status
            milestone.status = fire_transition(
                MilestoneStateMachine, milestone.status, event_name, actor.role.value
            )
            if milestone.status == MilestoneStatus.COMPLETED:
                milestone.completed_at = self._now()
            await self._milestone_repo.save(milestone)

            await self._event_repo.record(
                job_id=job.id,
                milestone_id=milestone.id,
                event_type=event_type,
                old_status=old_status,
                new_status=milestone.status,
                actor=str(actor.user_id),
            )
            if milestone.status == MilestoneStatus.COMPLETED:
                await self._notify(
                    context.freelancer_id,
                    NotificationType.MILESTONE_COMPLETED,
                    "Milestone Completed",
                    f'Milestone "{milestone.title}" has been marked as completed',
                    job=job,
                    milestone=milestone,
                )
            await self._progress.recompute(job)

        logger.info(
            "milestone.status_changed",
            milestone_id=str(milestone_id),
            old=old_status,
            new=milestone.status,
            actor_role=actor.role.value,
        )
        return milestone

    @staticmethod
    def _can_complete_manually(milestone: Milestone) -> bool:
        """Completion needs an approved submission.

        A milestone that was never funded and has nothing submitted may be
        completed directly.
        """
        submission = milestone.submission
        if submission is not None:
            return submission.review_status == ReviewStatus.APPROVED
        return milestone.escrow_status == EscrowStatus.UNFUNDED and milestone.payment_id is None

    async def delete_milestone(self, milestone_id: uuid.UUID, actor: Actor) -> None:
        """Delete an unfunded milestone. Funded milestones are part of the audit trail.

        Raises:
            AlreadyFundedError: If the milestone has ever been funded.
        """
        async with self._serialized_milestone(milestone_id) as (job, milestone):
            authorize(actor, Operation.DELETE_MILESTONE, AgreementContext(job.employer_id))
            if milestone.escrow_status != EscrowStatus.UNFUNDED or milestone.payment_id is not None:
                raise AlreadyFundedError(str(milestone.id))

            await self._milestone_repo.delete(milestone)
            await self._event_repo.record(
                job_id=job.id,
                milestone_id=milestone_id,
                event_type=EventType.MILESTONE_DELETED,
                old_status=milestone.status,
                new_status=None,
                actor=str(actor.user_id),
            )
            await self._progress.recompute(job)

        logger.info("milestone.deleted", job_id=str(job.id), milestone_id=str(milestone_id))

    async def recompute_progress(self, job_id: uuid.UUID) -> int:
        """Re-derive a job's progress under its lock. Used after repairs."""
        async with self._serialized(job_id) as job:
            return await self._progress.recompute(job)
