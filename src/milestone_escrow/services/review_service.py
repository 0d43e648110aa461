"""Submission & Review Workflow.

    submit_work   freelancer delivers (or redelivers) a milestone's work
    review_work   employer approves or rejects the latest delivery

Approval is the source of truth. The escrow release it triggers runs in a
SAVEPOINT: if the release fails, only the savepoint is rolled back, the
approval commits, and the stuck payment is queued for reconciliation.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from milestone_escrow.domain.enums import (
    EventType,
    MilestoneStatus,
    NotificationType,
    PaymentStatus,
    ReviewDecision,
    ReviewStatus,
)
from milestone_escrow.domain.exceptions import (
    EscrowError,
    InvalidFileError,
    InvalidTransitionError,
    MissingCommentError,
    MissingDescriptionError,
    NoSubmissionError,
    ValidationError,
)
from milestone_escrow.domain.policy import Operation, authorize
from milestone_escrow.domain.state_machine import MilestoneStateMachine, fire_transition
from milestone_escrow.infrastructure.database.orm_models import MilestoneSubmission
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.base import JobScopedService
from milestone_escrow.services.escrow_service import EscrowService
from milestone_escrow.services.reconciliation import ReconciliationService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Mapping, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.config import Settings
    from milestone_escrow.domain.policy import Actor, AgreementContext
    from milestone_escrow.infrastructure.database.orm_models import (
        Job,
        LedgerDiscrepancy,
        Milestone,
        Payment,
    )
    from milestone_escrow.infrastructure.locks import JobLockRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReviewResult:
    milestone: Milestone
    payment: Payment | None = None
    released: bool = False
    discrepancy: LedgerDiscrepancy | None = None


def _file_key(meta: Mapping[str, Any]) -> tuple[str, str]:
    return (str(meta.get("filename", "")), str(meta.get("path", "")))


class ReviewService(JobScopedService):
    """Freelancer submissions and the employer's review of them."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        locks: JobLockRegistry | None = None,
        escrow: EscrowService | None = None,
    ) -> None:
        super().__init__(session, settings=settings, locks=locks)
        self._escrow = escrow or EscrowService(session, settings=self._settings, locks=self._locks)
        self._reconciliation = ReconciliationService(
            session, settings=self._settings, locks=self._locks
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _validate_files(self, files: Sequence[Mapping[str, Any]]) -> list[dict]:
        """Check file metadata against the upload limits and normalize it."""
        if len(files) > self._settings.submission_max_files:
            raise InvalidFileError(
                f"At most {self._settings.submission_max_files} files may be submitted at once"
            )

        allowed = self._settings.allowed_extension_set
        normalized = []
        for meta in files:
            original_name = str(meta.get("original_name") or meta.get("filename") or "").strip()
            if not original_name:
                raise InvalidFileError("Every file needs a name")
            extension = PurePosixPath(original_name).suffix.lower()
            if extension not in allowed:
                raise InvalidFileError(f"File type {extension or '(none)'} is not allowed")
            try:
                size = int(meta.get("size", 0))
            except (TypeError, ValueError) as err:
                raise InvalidFileError(f"Invalid size for {original_name}") from err
            if size < 0 or size > self._settings.submission_max_file_bytes:
                raise InvalidFileError(
                    f"{original_name} exceeds the {self._settings.submission_max_file_bytes} "
                    "byte limit"
                )
            normalized.append(
                {
                    "filename": str(meta.get("filename") or original_name),
                    "original_name": original_name,
                    "path": str(meta.get("path") or ""),
                    "size": size,
                    "mimetype": str(meta.get("mimetype") or "application/octet-stream"),
                }
            )
        return normalized

    async def submit_work(
        self,
        milestone_id: uuid.UUID,
        actor: Actor,
        description: str,
        files: Sequence[Mapping[str, Any]] = (),
    ) -> Milestone:
        """Create or update the milestone's submission and reset it to pending review.

        Files accumulate across resubmissions; a file already attached (same
        filename and path) is not added twice, so a retried submit is harmless.

        Raises:
            MissingDescriptionError: If the description is blank.
            NotAssignedFreelancerError: If the actor is not the accepted freelancer.
        """
        description = (description or "").strip()
        if not description:
            raise MissingDescriptionError()
        new_files = self._validate_files(files)

        async with self._serialized_milestone(milestone_id) as (job, milestone):
            context = await self._context(job, repair=True)
            authorize(actor, Operation.SUBMIT_WORK, context)
            self._require_active(job)

            old_status = milestone.status
            milestone.status = fire_transition(
                MilestoneStateMachine, milestone.status, "submit_work", actor.role.value
            )

            now = self._now()
            submission = milestone.submission
            if submission is None:
                milestone.submission = MilestoneSubmission(
                    description=description,
                    files=new_files,
                    submitted_at=now,
                    review_status=ReviewStatus.PENDING.value,
                )
            else:
                known = {_file_key(f) for f in submission.files or []}
                merged = list(submission.files or [])
                merged.extend(f for f in new_files if _file_key(f) not in known)
                submission.files = merged
                submission.description = description
                submission.submitted_at = now
                submission.review_status = ReviewStatus.PENDING.value
                submission.reviewed_at = None
                submission.reviewed_by = None
            await self._milestone_repo.save(milestone)

            await self._event_repo.record(
                job_id=job.id,
                milestone_id=milestone.id,
                event_type=EventType.WORK_SUBMITTED,
                old_status=old_status,
                new_status=milestone.status,
                actor=str(actor.user_id),
                metadata={"files": len(milestone.submission.files)},
            )
            await self._notify(
                job.employer_id,
                NotificationType.WORK_SUBMITTED,
                "Work Submitted",
                f'Work has been submitted for milestone "{milestone.title}"',
                job=job,
                milestone=milestone,
            )
            await self._progress.recompute(job)

        logger.info(
            "review.work_submitted",
            milestone_id=str(milestone_id),
            files=len(milestone.submission.files),
            resubmission=old_status == milestone.status,
        )
        return milestone

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def review_work(
        self,
        milestone_id: uuid.UUID,
        actor: Actor,
        decision: str,
        comment: str | None = None,
    ) -> ReviewResult:
        """Approve or reject the milestone's submission.

        Approval completes the milestone and then releases its held payment,
        if any. A failed release never undoes the approval.

        Raises:
            MissingCommentError: If rejecting without a comment.
            NoSubmissionError: If nothing has been submitted yet.
            NotOwnerError: If the actor is not the job's employer.
        """
        try:
            verdict = ReviewDecision(decision)
        except ValueError as err:
            raise ValidationError(
                f"Decision must be 'approved' or 'rejected', got '{decision}'",
                code="INVALID_DECISION",
            ) from err
        comment = (comment or "").strip() or None
        if verdict == ReviewDecision.REJECTED and comment is None:
            raise MissingCommentError()

        async with self._serialized_milestone(milestone_id) as (job, milestone):
            context = await self._context(job, repair=True)
            authorize(actor, Operation.REVIEW_WORK, context)
            submission = milestone.submission
            if submission is None:
                raise NoSubmissionError(str(milestone.id))
            if milestone.status == MilestoneStatus.COMPLETED:
                raise InvalidTransitionError(milestone.status, verdict.value, actor.role.value)

            if verdict == ReviewDecision.APPROVED:
                result = await self._approve(job, milestone, submission, actor, comment, context)
            else:
                result = await self._reject(job, milestone, submission, actor, comment, context)
            await self._progress.recompute(job)

        logger.info(
            "review.completed",
            milestone_id=str(milestone_id),
            decision=verdict.value,
            released=result.released,
            discrepancy=result.discrepancy is not None,
        )
        return result

    async def _approve(
        self,
        job: Job,
        milestone: Milestone,
        submission: MilestoneSubmission,
        actor: Actor,
        comment: str | None,
        context: AgreementContext,
    ) -> ReviewResult:
        old_status = milestone.status
        milestone.status = fire_transition(
            MilestoneStateMachine, milestone.status, "approve_work", actor.role.value
        )
        now = self._now()
        milestone.completed_at = now
        submission.review_status = ReviewStatus.APPROVED.value
        submission.reviewed_at = now
        submission.reviewed_by = actor.user_id
        if comment is not None:
            submission.review_comment = comment
        await self._milestone_repo.save(milestone)

        await self._event_repo.record(
            job_id=job.id,
            milestone_id=milestone.id,
            event_type=EventType.WORK_APPROVED,
            old_status=old_status,
            new_status=milestone.status,
            actor=str(actor.user_id),
        )
        await self._notify(
            context.freelancer_id,
            NotificationType.WORK_APPROVED,
            "Work Approved",
            f'Your work for milestone "{milestone.title}" has been approved',
            job=job,
            milestone=milestone,
        )

        if milestone.payment_id is None:
            return ReviewResult(milestone=milestone)

        payment = await self._payment_repo.get_for_update(milestone.payment_id)
        if payment is None or payment.status != PaymentStatus.HELD:
            return ReviewResult(
                milestone=milestone,
                payment=payment,
                released=payment is not None and payment.status == PaymentStatus.RELEASED,
            )

        try:
            async with self._session.begin_nested():
                await self._escrow.apply_release(job, milestone, payment, actor)
        except (EscrowError, SQLAlchemyError) as err:
            # The savepoint is gone; reload what it may have expired.
            for obj in (job, milestone, payment):
                await self._session.refresh(obj)
            discrepancy = await self._reconciliation.record_release_failure(
                job, milestone, payment, err
            )
            return ReviewResult(milestone=milestone, payment=payment, discrepancy=discrepancy)

        return ReviewResult(milestone=milestone, payment=payment, released=True)

    async def _reject(
        self,
        job: Job,
        milestone: Milestone,
        submission: MilestoneSubmission,
        actor: Actor,
        comment: str | None,
        context: AgreementContext,
    ) -> ReviewResult:
        submission.review_status = ReviewStatus.REJECTED.value
        submission.review_comment = comment
        submission.reviewed_at = self._now()
        submission.reviewed_by = actor.user_id
        await self._milestone_repo.save(milestone)

        await self._event_repo.record(
            job_id=job.id,
            milestone_id=milestone.id,
            event_type=EventType.WORK_REJECTED,
            old_status=milestone.status,
            new_status=milestone.status,
            actor=str(actor.user_id),
            metadata={"comment": comment},
        )
        await self._notify(
            context.freelancer_id,
            NotificationType.WORK_REJECTED,
            "Changes Requested",
            f'Your work for milestone "{milestone.title}" needs changes: {comment}',
            job=job,
            milestone=milestone,
        )
        return ReviewResult(milestone=milestone)
