"""Escrow Service: the Escrow Account and Payment Ledger use cases.

This is the application layer that coordinates between:
    - Domain state machines (milestone escrow axis, payment entry)
    - EscrowAccount arithmetic (running balances, never negative)
    - Repositories (data access)
    - Event log (audit trail) and notification outbox

Funding writes the milestone, the payment, the milestone-payment link and the
job balance in one transaction under the job's serialization point. Release
is idempotent: releasing an already released payment is a successful no-op.
"""

from __future__ import annotations

import uuid  # noqa: TC003
from dataclasses import dataclass
from decimal import Decimal  # noqa: TC003
from typing import TYPE_CHECKING, Any

from milestone_escrow.domain.enums import (
    ActorRole,
    EscrowStatus,
    EventType,
    MilestoneStatus,
    NotificationType,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
)
from milestone_escrow.domain.escrow_account import EscrowAccount
from milestone_escrow.domain.exceptions import (
    AlreadyFundedError,
    ConflictError,
    CounterpartyNotFoundError,
    InvalidTransitionError,
    MilestoneNotFoundError,
    PaymentNotFoundError,
    PaymentNotHeldError,
    ValidationError,
)
from milestone_escrow.domain.ledger_rules import (
    validate_bank_details,
    validate_ledger_entry,
    validate_payment_details,
)
from milestone_escrow.domain.money import format_amount, normalize_currency, to_minor
from milestone_escrow.domain.policy import Operation, authorize
from milestone_escrow.domain.state_machine import (
    MilestoneEscrowStateMachine,
    PaymentStateMachine,
    fire_transition,
)
from milestone_escrow.infrastructure.database.orm_models import Job, Milestone, Payment
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.base import JobScopedService, MilestoneSpec
from milestone_escrow.services.payment_service import PaymentService

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.config import Settings
    from milestone_escrow.domain.policy import Actor
    from milestone_escrow.infrastructure.locks import JobLockRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class FundingResult:
    payment: Payment
    milestone: Milestone


@dataclass(frozen=True)
class EscrowBalance:
    job_id: uuid.UUID
    currency: str
    escrow_balance_minor: int
    total_paid_minor: int
    progress: int


def _account_of(job: Job) -> EscrowAccount:
    return EscrowAccount(
        escrow_balance_minor=job.escrow_balance_minor,
        total_paid_minor=job.total_paid_minor,
    )


def _apply_account(job: Job, account: EscrowAccount) -> None:
    job.escrow_balance_minor = account.escrow_balance_minor
    job.total_paid_minor = account.total_paid_minor


class EscrowService(JobScopedService):
    """Funds, releases and refunds milestone escrow; handles withdrawals."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        locks: JobLockRegistry | None = None,
        gateway: PaymentService | None = None,
    ) -> None:
        super().__init__(session, settings=settings, locks=locks)
        self._gateway = gateway or PaymentService(simulate=self._settings.payment_gateway_simulate)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def fund_escrow(
        self,
        job_id: uuid.UUID,
        actor: Actor,
        payment_method: str,
        payment_details: Mapping[str, Any],
        milestone_spec: MilestoneSpec | None = None,
        milestone_id: uuid.UUID | None = None,
    ) -> FundingResult:
        """Hold funds against a new or existing unfunded milestone.

        Exactly one of ``milestone_spec`` (create and fund) or ``milestone_id``
        (fund an existing milestone) must be given.

        Raises:
            NotOwnerError: If the actor is not the job's employer.
            CounterpartyNotFoundError: If no application has been accepted yet.
            AlreadyFundedError: If the milestone already carries escrow.
            PaymentGatewayError: If the instrument is declined.
        """
        if (milestone_spec is None) == (milestone_id is None):
            raise ValidationError(
                "Provide either a new milestone or an existing milestone id",
                code="MILESTONE_REQUIRED",
            )
        masked_details = validate_payment_details(payment_method, payment_details)

        async with self._serialized(job_id) as job:
            context = await self._context(job, repair=True)
            authorize(actor, Operation.FUND_ESCROW, context)
            self._require_active(job)
            if context.freelancer_id is None:
                raise CounterpartyNotFoundError(str(job.id))
            freelancer_id = context.freelancer_id

            if milestone_id is not None:
                milestone = await self._get_job_milestone(job, milestone_id)
                if milestone.status == MilestoneStatus.COMPLETED:
                    raise ConflictError(
                        f"Milestone is already completed: {milestone.id}",
                        code="MILESTONE_COMPLETED",
                    )
                funded = milestone.escrow_status != EscrowStatus.UNFUNDED
                if funded or milestone.payment_id is not None:
                    raise AlreadyFundedError(str(milestone.id))
            else:
                milestone = await self._new_milestone(job, milestone_spec, actor.user_id)

            amount_minor = validate_ledger_entry(
                PaymentType.JOB_PAYMENT,
                milestone.amount_minor,
                job_id=job.id,
                milestone_id=milestone.id,
                employer_id=job.employer_id,
                freelancer_id=freelancer_id,
            )
            escrow_status = fire_transition(
                MilestoneEscrowStateMachine, milestone.escrow_status, "fund", actor.role.value
            )
            account = _account_of(job).hold(amount_minor)

            transaction_id = await self._gateway.charge(
                amount_minor, milestone.currency, masked_details["method"], payment_details
            )
            payment = await self._payment_repo.create(
                Payment(
                    type=PaymentType.JOB_PAYMENT.value,
                    status=fire_transition(
                        PaymentStateMachine, PaymentStatus.PENDING.value, "hold"
                    ),
                    amount_minor=amount_minor,
                    currency=milestone.currency,
                    job_id=job.id,
                    milestone_id=milestone.id,
                    employer_id=job.employer_id,
                    freelancer_id=freelancer_id,
                    payment_method=masked_details["method"],
                    payment_details=masked_details,
                    transaction_id=transaction_id,
                )
            )

            milestone.escrow_status = escrow_status
            milestone.payment_id = payment.id
            _apply_account(job, account)
            await self._job_repo.save(job)

            await self._event_repo.record(
                job_id=job.id,
                milestone_id=milestone.id,
                payment_id=payment.id,
                event_type=EventType.ESCROW_FUNDED,
                old_status=EscrowStatus.UNFUNDED.value,
                new_status=milestone.escrow_status,
                actor=str(actor.user_id),
                metadata={
                    "amount_minor": amount_minor,
                    "currency": payment.currency,
                    "transaction_id": transaction_id,
                },
            )
            await self._notify(
                freelancer_id,
                NotificationType.MILESTONE_FUNDED,
                "Milestone Funded",
                f'Milestone "{milestone.title}" has been funded with '
                f"{format_amount(amount_minor, payment.currency)}",
                job=job,
                milestone=milestone,
            )
            await self._progress.recompute(job)

        logger.info(
            "escrow.funded",
            job_id=str(job_id),
            milestone_id=str(milestone.id),
            payment_id=str(payment.id),
            amount_minor=amount_minor,
            escrow_balance_minor=job.escrow_balance_minor,
        )
        return FundingResult(payment=payment, milestone=milestone)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_payment(self, payment_id: uuid.UUID, actor: Actor) -> Payment:
        """Release a held payment for a completed milestone.

        Idempotent: an already released payment is returned unchanged.

        Raises:
            PaymentNotHeldError: If the payment is pending or refunded.
            InvalidTransitionError: If the milestone's work is not completed.
        """
        job_id = await self._job_of_payment(payment_id)
        async with self._serialized(job_id) as job:
            payment = await self._payment_repo.get_for_update(payment_id)
            if payment is None:
                raise PaymentNotFoundError(str(payment_id))
            authorize(actor, Operation.RELEASE_PAYMENT, await self._context(job, repair=True))

            if payment.status == PaymentStatus.RELEASED:
                logger.info("escrow.release_noop", payment_id=str(payment_id))
                return payment
            if payment.status != PaymentStatus.HELD:
                raise PaymentNotHeldError(str(payment.id), payment.status)

            milestone = await self._get_job_milestone(job, payment.milestone_id)
            if milestone.status != MilestoneStatus.COMPLETED:
                raise InvalidTransitionError(
                    milestone.status, EscrowStatus.RELEASED.value, actor.role.value
                )
            await self.apply_release(job, milestone, payment, actor)

        return payment

    async def apply_release(
        self, job: Job, milestone: Milestone, payment: Payment, actor: Actor
    ) -> None:
        """Move a held payment to RELEASED. The caller holds the job's lock.

        Raises:
            LedgerInconsistencyError: If the job does not hold enough escrow.
        """
        account = _account_of(job).release(payment.amount_minor, str(payment.id))
        payment.status = fire_transition(
            PaymentStateMachine, payment.status, "release", actor.role.value
        )
        payment.released_at = self._now()
        milestone.escrow_status = fire_transition(
            MilestoneEscrowStateMachine, milestone.escrow_status, "release", actor.role.value
        )
        _apply_account(job, account)
        await self._session.flush()

        await self._event_repo.record(
            job_id=job.id,
            milestone_id=milestone.id,
            payment_id=payment.id,
            event_type=EventType.ESCROW_RELEASED,
            old_status=PaymentStatus.HELD.value,
            new_status=payment.status,
            actor=str(actor.user_id),
            metadata={"amount_minor": payment.amount_minor},
        )
        await self._notify(
            payment.freelancer_id,
            NotificationType.PAYMENT_RELEASED,
            "Payment Released",
            f"Payment of {format_amount(payment.amount_minor, payment.currency)} "
            f'for milestone "{milestone.title}" has been released',
            job=job,
            milestone=milestone,
        )
        resolved = await self._discrepancy_repo.resolve_for_payment(payment.id)

        logger.info(
            "escrow.released",
            job_id=str(job.id),
            milestone_id=str(milestone.id),
            payment_id=str(payment.id),
            amount_minor=payment.amount_minor,
            escrow_balance_minor=job.escrow_balance_minor,
            total_paid_minor=job.total_paid_minor,
            discrepancies_resolved=resolved,
        )

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund_payment(self, payment_id: uuid.UUID, actor: Actor) -> Payment:
        """Return held funds to the employer. Total paid is not touched."""
        job_id = await self._job_of_payment(payment_id)
        async with self._serialized(job_id) as job:
            payment = await self._payment_repo.get_for_update(payment_id)
            if payment is None:
                raise PaymentNotFoundError(str(payment_id))
            authorize(actor, Operation.REFUND_PAYMENT, await self._context(job, repair=True))
            if payment.status != PaymentStatus.HELD:
                raise PaymentNotHeldError(str(payment.id), payment.status)

            milestone = await self._get_job_milestone(job, payment.milestone_id)
            account = _account_of(job).refund(payment.amount_minor, str(payment.id))
            payment.status = fire_transition(
                PaymentStateMachine, payment.status, "refund", actor.role.value
            )
            payment.refunded_at = self._now()
            milestone.escrow_status = fire_transition(
                MilestoneEscrowStateMachine, milestone.escrow_status, "refund", actor.role.value
            )
            _apply_account(job, account)
            await self._job_repo.save(job)

            await self._event_repo.record(
                job_id=job.id,
                milestone_id=milestone.id,
                payment_id=payment.id,
                event_type=EventType.ESCROW_REFUNDED,
                old_status=PaymentStatus.HELD.value,
                new_status=payment.status,
                actor=str(actor.user_id),
                metadata={"amount_minor": payment.amount_minor},
            )
            await self._notify(
                payment.employer_id,
                NotificationType.PAYMENT_REFUNDED,
                "Payment Refunded",
                f"{format_amount(payment.amount_minor, payment.currency)} held for "
                f'milestone "{milestone.title}" has been refunded',
                job=job,
                milestone=milestone,
            )

        logger.info(
            "escrow.refunded",
            job_id=str(job_id),
            payment_id=str(payment_id),
            amount_minor=payment.amount_minor,
            escrow_balance_minor=job.escrow_balance_minor,
        )
        return payment

    # ------------------------------------------------------------------
    # Withdrawals (ledger only, no job linkage)
    # ------------------------------------------------------------------

    async def request_withdrawal(
        self,
        actor: Actor,
        amount: Decimal,
        bank_details: Mapping[str, Any],
        currency: str | None = None,
    ) -> Payment:
        """Record a pending, negative-amount withdrawal to the actor's bank account."""
        authorize(actor, Operation.REQUEST_WITHDRAWAL)
        currency = normalize_currency(currency or self._settings.default_currency)
        signed_minor = validate_ledger_entry(PaymentType.WITHDRAWAL, to_minor(amount, currency))
        masked_details = validate_bank_details(bank_details)

        async with self._transaction():
            payment = await self._payment_repo.create(
                Payment(
                    type=PaymentType.WITHDRAWAL.value,
                    status=PaymentStatus.PENDING.value,
                    amount_minor=signed_minor,
                    currency=currency,
                    employer_id=actor.user_id if actor.role == ActorRole.EMPLOYER else None,
                    freelancer_id=actor.user_id if actor.role == ActorRole.FREELANCER else None,
                    payment_method=PaymentMethod.BANK_TRANSFER.value,
                    payment_details=masked_details,
                )
            )
            await self._event_repo.record(
                job_id=None,
                payment_id=payment.id,
                event_type=EventType.WITHDRAWAL_REQUESTED,
                old_status=None,
                new_status=payment.status,
                actor=str(actor.user_id),
                metadata={"amount_minor": signed_minor, "currency": currency},
            )
            await self._notify(
                actor.user_id,
                NotificationType.WITHDRAWAL_REQUESTED,
                "Withdrawal Requested",
                f"Your withdrawal of {format_amount(-signed_minor, currency)} is being processed",
            )

        logger.info(
            "ledger.withdrawal_requested",
            payment_id=str(payment.id),
            amount_minor=signed_minor,
            currency=currency,
        )
        return payment

    async def complete_withdrawal(self, payment_id: uuid.UUID, actor: Actor) -> Payment:
        """Settle a pending withdrawal once the payout has been sent."""
        authorize(actor, Operation.COMPLETE_WITHDRAWAL)
        async with self._transaction():
            payment = await self._payment_repo.get_for_update(payment_id)
            if payment is None:
                raise PaymentNotFoundError(str(payment_id))
            if payment.type != PaymentType.WITHDRAWAL:
                raise ValidationError(
                    f"Payment {payment_id} is not a withdrawal", code="NOT_WITHDRAWAL"
                )
            old_status = payment.status
            new_status = fire_transition(
                PaymentStateMachine, payment.status, "settle", actor.role.value
            )
            payment.transaction_id = await self._gateway.transfer_to_bank(
                -payment.amount_minor, payment.currency, payment.payment_details or {}
            )
            payment.status = new_status
            payment.completed_at = self._now()
            await self._payment_repo.save(payment)

            await self._event_repo.record(
                job_id=None,
                payment_id=payment.id,
                event_type=EventType.WITHDRAWAL_COMPLETED,
                old_status=old_status,
                new_status=payment.status,
                actor=str(actor.user_id),
                metadata={"transaction_id": payment.transaction_id},
            )

        logger.info("ledger.withdrawal_completed", payment_id=str(payment_id))
        return payment

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_payments(self, actor: Actor, limit: int = 100) -> list[Payment]:
        """Payment history where the actor is either party, newest first."""
        return await self._payment_repo.list_for_user(actor.user_id, limit=limit)

    async def get_escrow_balance(self, job_id: uuid.UUID, actor: Actor) -> EscrowBalance:
        job = await self._get_job_or_raise(job_id)
        authorize(actor, Operation.VIEW_ESCROW, await self._context(job))
        return EscrowBalance(
            job_id=job.id,
            currency=job.currency,
            escrow_balance_minor=job.escrow_balance_minor,
            total_paid_minor=job.total_paid_minor,
            progress=job.progress,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _job_of_payment(self, payment_id: uuid.UUID) -> uuid.UUID:
        payment = await self._payment_repo.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        if payment.type != PaymentType.JOB_PAYMENT or payment.job_id is None:
            raise ValidationError(
                f"Payment {payment_id} is not a milestone escrow payment",
                code="NOT_JOB_PAYMENT",
            )
        return payment.job_id

    async def _get_job_milestone(self, job: Job, milestone_id: uuid.UUID | None) -> Milestone:
        milestone = (
            await self._milestone_repo.get_by_id(milestone_id, fresh=True)
            if milestone_id is not None
            else None
        )
        if milestone is None or milestone.job_id != job.id:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone
