"""Tests for ledger reconciliation and the discrepancy queue."""

from __future__ import annotations

import pytest
from sqlalchemy import update

from milestone_escrow.domain.exceptions import AuthorizationError
from milestone_escrow.infrastructure.database.orm_models import Job
from milestone_escrow.infrastructure.database.repositories import EventRepository


class TestReconcileJob:
    @pytest.mark.asyncio
    async def test_consistent_ledger(self, svc, job, fund, employer, freelancer, admin) -> None:
        first = await fund(job, amount="300")
        await fund(job, amount="200")
        await svc.reviews.submit_work(first.milestone.id, freelancer, "Done")
        await svc.reviews.review_work(first.milestone.id, employer, "approved")

        report = await svc.reconciliation.reconcile_job(job.id, admin)

        assert report.consistent
        assert report.payments_checked == 2
        assert report.expected_escrow_minor == report.actual_escrow_minor == 20_000
        assert report.expected_paid_minor == report.actual_paid_minor == 30_000

    @pytest.mark.asyncio
    async def test_refunds_count_for_nothing(self, svc, job, fund, employer, admin) -> None:
        funded = await fund(job)
        await svc.escrow.refund_payment(funded.payment.id, employer)

        report = await svc.reconciliation.reconcile_job(job.id, admin)
        assert report.consistent
        assert report.expected_escrow_minor == 0
        assert report.expected_paid_minor == 0

    @pytest.mark.asyncio
    async def test_balance_mismatch_is_queued(self, svc, session, job, fund, admin) -> None:
        job_id = job.id
        await fund(job)
        await session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(escrow_balance_minor=12_345)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        report = await svc.reconciliation.reconcile_job(job_id, admin)

        assert not report.consistent
        assert report.expected_escrow_minor == 50_000
        assert report.actual_escrow_minor == 12_345
        assert report.discrepancy.kind == "balance_mismatch"
        assert report.discrepancy.resolved is False

        queued = await svc.reconciliation.list_discrepancies(admin, job_id=job_id)
        assert [d.id for d in queued] == [report.discrepancy.id]
        events = await EventRepository(session).get_by_job(job_id)
        assert "LEDGER_DISCREPANCY" in {e.event_type for e in events}

    @pytest.mark.asyncio
    async def test_admin_only(self, svc, job, employer) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            await svc.reconciliation.reconcile_job(job.id, employer)
        assert exc_info.value.code == "ADMIN_REQUIRED"
        with pytest.raises(AuthorizationError):
            await svc.reconciliation.list_discrepancies(employer)


class TestListDiscrepancies:
    @pytest.mark.asyncio
    async def test_filters(self, svc, session, job, fund, employer, admin) -> None:
        job_id = job.id
        other = await svc.agreements.create_job(employer, "Unrelated")
        await fund(job)
        await session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(total_paid_minor=1)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        await svc.reconciliation.reconcile_job(job_id, admin)

        assert len(await svc.reconciliation.list_discrepancies(admin)) == 1
        assert len(await svc.reconciliation.list_discrepancies(admin, resolved=False)) == 1
        assert await svc.reconciliation.list_discrepancies(admin, resolved=True) == []
        assert await svc.reconciliation.list_discrepancies(admin, job_id=other.id) == []
