"""End-to-end milestone scenarios against a real (SQLite) database.

Each scenario drives the services the way the API does and checks the job's
running balances, progress and audit trail after every step.
"""

from __future__ import annotations

from collections import Counter

import pytest

from milestone_escrow.domain.exceptions import AlreadyFundedError, ConflictError
from milestone_escrow.infrastructure.database.repositories import EventRepository


async def _balances(svc, job_id, actor) -> tuple[int, int, int]:
    balance = await svc.escrow.get_escrow_balance(job_id, actor)
    assert balance.escrow_balance_minor >= 0
    return balance.escrow_balance_minor, balance.total_paid_minor, balance.progress


class TestSingleMilestoneLifecycle:
    @pytest.mark.asyncio
    async def test_fund_submit_approve(self, svc, session, job, fund, employer, freelancer) -> None:
        funded = await fund(job, amount="500")
        assert funded.payment.status == "held"
        assert await _balances(svc, job.id, employer) == (50_000, 0, 0)

        milestone = await svc.reviews.submit_work(funded.milestone.id, freelancer, "All pages")
        assert milestone.status == "in-progress"
        assert await _balances(svc, job.id, employer) == (50_000, 0, 0)

        review = await svc.reviews.review_work(funded.milestone.id, employer, "approved")
        assert review.milestone.status == "completed"
        assert review.payment.status == "released"
        assert await _balances(svc, job.id, employer) == (0, 50_000, 100)

        events = await EventRepository(session).get_by_job(job.id)
        assert Counter(e.event_type for e in events) == Counter(
            {
                "JOB_CREATED": 1,
                "APPLICATION_SUBMITTED": 1,
                "APPLICATION_ACCEPTED": 1,
                "MILESTONE_CREATED": 1,
                "ESCROW_FUNDED": 1,
                "WORK_SUBMITTED": 1,
                "WORK_APPROVED": 1,
                "ESCROW_RELEASED": 1,
            }
        )


class TestPartialCompletion:
    @pytest.mark.asyncio
    async def test_approve_one_of_two(self, svc, job, fund, employer, freelancer) -> None:
        first = await fund(job, amount="300", title="Design")
        await fund(job, amount="200", title="Build")
        assert await _balances(svc, job.id, employer) == (50_000, 0, 0)

        await svc.reviews.submit_work(first.milestone.id, freelancer, "Designs attached")
        await svc.reviews.review_work(first.milestone.id, employer, "approved")

        assert await _balances(svc, job.id, employer) == (20_000, 30_000, 50)


class TestRejectedSubmission:
    @pytest.mark.asyncio
    async def test_reject_with_comment(self, svc, job, fund, employer, freelancer) -> None:
        funded = await fund(job)
        await svc.reviews.submit_work(funded.milestone.id, freelancer, "First cut")

        review = await svc.reviews.review_work(
            funded.milestone.id, employer, "rejected", "needs tests"
        )

        assert review.milestone.status == "in-progress"
        assert review.milestone.submission.review_comment == "needs tests"
        assert review.milestone.escrow_status == "funded"
        assert funded.payment.status == "held"
        assert await _balances(svc, job.id, employer) == (50_000, 0, 0)


class TestDeleteFundedMilestone:
    @pytest.mark.asyncio
    async def test_conflict_and_no_mutation(self, svc, session, job, fund, employer) -> None:
        job_id = job.id
        funded = await fund(job)
        milestone_id = funded.milestone.id
        before = await _balances(svc, job_id, employer)

        with pytest.raises(ConflictError) as exc_info:
            await svc.milestones.delete_milestone(milestone_id, employer)
        assert isinstance(exc_info.value, AlreadyFundedError)
        assert exc_info.value.http_status == 409

        milestone = await svc.milestones.get_milestone(milestone_id, employer)
        assert milestone.escrow_status == "funded"
        assert await _balances(svc, job_id, employer) == before
        events = await EventRepository(session).get_by_job(job_id)
        assert "MILESTONE_DELETED" not in {e.event_type for e in events}


class TestProgressInvariant:
    @pytest.mark.asyncio
    async def test_progress_tracks_every_status_change(
        self, svc, job, fund, employer, freelancer
    ) -> None:
        milestones = [(await fund(job, amount="100", title=f"M{i}")).milestone for i in range(3)]
        expected = [33, 67, 100]
        for milestone, progress in zip(milestones, expected, strict=True):
            await svc.reviews.submit_work(milestone.id, freelancer, "Done")
            await svc.reviews.review_work(milestone.id, employer, "approved")
            assert (await _balances(svc, job.id, employer))[2] == progress

        assert await _balances(svc, job.id, employer) == (0, 30_000, 100)
