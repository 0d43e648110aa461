"""Reconciliation: the audit path for ledger inconsistencies.

Ledger inconsistencies are never returned to the operation that caused them.
They are logged at error level and queued as LedgerDiscrepancy rows, which an
admin reviews here. A later successful release of the same payment resolves
its open discrepancies automatically.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from milestone_escrow.domain.enums import DiscrepancyKind, EventType
from milestone_escrow.domain.escrow_account import LedgerEntryView, derive_from_ledger
from milestone_escrow.domain.policy import Operation, authorize
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.base import JobScopedService

if TYPE_CHECKING:
    import uuid

    from milestone_escrow.domain.policy import Actor
    from milestone_escrow.infrastructure.database.orm_models import (
        Job,
        LedgerDiscrepancy,
        Milestone,
        Payment,
    )

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconciliationReport:
    job_id: uuid.UUID
    expected_escrow_minor: int
    actual_escrow_minor: int
    expected_paid_minor: int
    actual_paid_minor: int
    discrepancy: LedgerDiscrepancy | None = None
    payments_checked: int = 0

    @property
    def consistent(self) -> bool:
        return self.discrepancy is None


class ReconciliationService(JobScopedService):
    """Compares running balances with the ledger and keeps the discrepancy queue."""

    async def reconcile_job(self, job_id: uuid.UUID, actor: Actor) -> ReconciliationReport:
        """Recompute a job's balances from its payments and record any mismatch."""
        authorize(actor, Operation.RECONCILE)
        async with self._serialized(job_id) as job:
            payments = await self._payment_repo.list_by_job(job.id)
            expected = derive_from_ledger(
                LedgerEntryView(type=p.type, status=p.status, amount_minor=p.amount_minor)
                for p in payments
            )

            discrepancy = None
            if (
                expected.escrow_balance_minor != job.escrow_balance_minor
                or expected.total_paid_minor != job.total_paid_minor
            ):
                detail = (
                    f"Ledger holds {expected.escrow_balance_minor} and paid "
                    f"{expected.total_paid_minor}; job records {job.escrow_balance_minor} "
                    f"and {job.total_paid_minor}"
                )
                logger.error(
                    "ledger.balance_mismatch",
                    job_id=str(job.id),
                    expected_escrow_minor=expected.escrow_balance_minor,
                    actual_escrow_minor=job.escrow_balance_minor,
                    expected_paid_minor=expected.total_paid_minor,
                    actual_paid_minor=job.total_paid_minor,
                )
                discrepancy = await self._discrepancy_repo.record(
                    job_id=job.id,
                    kind=DiscrepancyKind.BALANCE_MISMATCH,
                    detail=detail,
                    expected_escrow_minor=expected.escrow_balance_minor,
                    actual_escrow_minor=job.escrow_balance_minor,
                    expected_paid_minor=expected.total_paid_minor,
                    actual_paid_minor=job.total_paid_minor,
                )
                await self._event_repo.record(
                    job_id=job.id,
                    event_type=EventType.LEDGER_DISCREPANCY,
                    old_status=None,
                    new_status=None,
                    actor=str(actor.user_id),
                    metadata={"kind": DiscrepancyKind.BALANCE_MISMATCH.value, "detail": detail},
                )
            else:
                logger.info("ledger.reconciled", job_id=str(job.id), payments=len(payments))

            return ReconciliationReport(
                job_id=job.id,
                expected_escrow_minor=expected.escrow_balance_minor,
                actual_escrow_minor=job.escrow_balance_minor,
                expected_paid_minor=expected.total_paid_minor,
                actual_paid_minor=job.total_paid_minor,
                discrepancy=discrepancy,
                payments_checked=len(payments),
            )

    async def list_discrepancies(
        self,
        actor: Actor,
        job_id: uuid.UUID | None = None,
        resolved: bool | None = None,
    ) -> list[LedgerDiscrepancy]:
        authorize(actor, Operation.RECONCILE)
        return await self._discrepancy_repo.list_discrepancies(job_id=job_id, resolved=resolved)

    async def record_release_failure(
        self,
        job: Job,
        milestone: Milestone,
        payment: Payment,
        error: Exception,
    ) -> LedgerDiscrepancy:
        """Queue a release that failed after its approval was kept.

        Runs inside the caller's transaction, under the job's lock.
        """
        logger.error(
            "ledger.release_failed",
            job_id=str(job.id),
            milestone_id=str(milestone.id),
            payment_id=str(payment.id),
            amount_minor=payment.amount_minor,
            escrow_balance_minor=job.escrow_balance_minor,
            error=str(error),
            error_type=type(error).__name__,
        )
        discrepancy = await self._discrepancy_repo.record(
            job_id=job.id,
            kind=DiscrepancyKind.RELEASE_FAILED,
            detail=f"Release of payment {payment.id} failed: {error}",
            payment_id=payment.id,
            actual_escrow_minor=job.escrow_balance_minor,
            actual_paid_minor=job.total_paid_minor,
        )
        await self._event_repo.record(
            job_id=job.id,
            milestone_id=milestone.id,
            payment_id=payment.id,
            event_type=EventType.LEDGER_DISCREPANCY,
            old_status=payment.status,
            new_status=payment.status,
            metadata={"kind": DiscrepancyKind.RELEASE_FAILED.value, "error": str(error)},
        )
        return discrepancy
