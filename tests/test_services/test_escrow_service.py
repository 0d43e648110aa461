"""Tests for the escrow account and payment ledger use cases."""

from __future__ import annotations

import uuid
from collections import Counter
from decimal import Decimal

import pytest

from milestone_escrow.domain.enums import ActorRole
from milestone_escrow.domain.exceptions import (
    AlreadyFundedError,
    AuthorizationError,
    CounterpartyNotFoundError,
    CurrencyMismatchError,
    InvalidAmountError,
    InvalidPaymentDetailsError,
    InvalidTransitionError,
    JobNotActiveError,
    NotOwnerError,
    PaymentGatewayError,
    PaymentNotHeldError,
    ValidationError,
)
from milestone_escrow.domain.policy import Actor
from milestone_escrow.infrastructure.database.repositories import (
    EventRepository,
    OutboxRepository,
)
from milestone_escrow.services import MilestoneSpec
from milestone_escrow.services.payment_service import DECLINED_TEST_CARD


class TestFundEscrow:
    @pytest.mark.asyncio
    async def test_create_and_fund(self, session, job, fund, employer, freelancer) -> None:
        result = await fund(job, amount="500.00", title="Design")

        payment, milestone = result.payment, result.milestone
        assert payment.type == "job_payment"
        assert payment.status == "held"
        assert payment.amount_minor == 50_000
        assert payment.employer_id == employer.user_id
        assert payment.freelancer_id == freelancer.user_id
        assert payment.transaction_id.startswith("txn_")
        assert payment.payment_details["last4"] == "4242"
        assert "card_number" not in payment.payment_details

        assert milestone.status == "pending"
        assert milestone.escrow_status == "funded"
        assert milestone.payment_id == payment.id

        assert job.escrow_balance_minor == 50_000
        assert job.total_paid_minor == 0
        assert job.progress == 0

        events = await EventRepository(session).get_by_job(job.id)
        assert Counter(e.event_type for e in events)["ESCROW_FUNDED"] == 1
        notifications = await OutboxRepository(session).list_for_recipient(freelancer.user_id)
        assert "milestone_funded" in {n.type for n in notifications}

    @pytest.mark.asyncio
    async def test_fund_existing_milestone(self, svc, job, employer, card, due) -> None:
        milestone = await svc.milestones.create_milestone(
            job.id, employer, MilestoneSpec(title="Copy", amount=Decimal("120"), due_date=due)
        )
        assert job.escrow_balance_minor == 0

        result = await svc.escrow.fund_escrow(
            job.id, employer, "card", card, milestone_id=milestone.id
        )
        assert result.milestone.id == milestone.id
        assert result.milestone.escrow_status == "funded"
        assert job.escrow_balance_minor == 12_000

    @pytest.mark.asyncio
    async def test_double_funding_rejected(self, svc, job, fund, employer, card) -> None:
        job_id = job.id
        result = await fund(job)
        milestone_id = result.milestone.id

        with pytest.raises(AlreadyFundedError):
            await svc.escrow.fund_escrow(job_id, employer, "card", card, milestone_id=milestone_id)

        balance = await svc.escrow.get_escrow_balance(job_id, employer)
        assert balance.escrow_balance_minor == 50_000

    @pytest.mark.asyncio
    async def test_both_or_neither_milestone_argument(self, svc, job, employer, card, due) -> None:
        spec = MilestoneSpec(title="X", amount=Decimal("1"), due_date=due)
        with pytest.raises(ValidationError) as exc_info:
            await svc.escrow.fund_escrow(job.id, employer, "card", card)
        assert exc_info.value.code == "MILESTONE_REQUIRED"
        with pytest.raises(ValidationError):
            await svc.escrow.fund_escrow(
                job.id, employer, "card", card, milestone_spec=spec, milestone_id=uuid.uuid4()
            )

    @pytest.mark.asyncio
    async def test_declined_card_leaves_nothing_behind(
        self, svc, job, fund, employer, card
    ) -> None:
        job_id = job.id
        with pytest.raises(PaymentGatewayError) as exc_info:
            await fund(job_id, details={**card, "card_number": DECLINED_TEST_CARD})
        assert exc_info.value.http_status == 402

        balance = await svc.escrow.get_escrow_balance(job_id, employer)
        assert balance.escrow_balance_minor == 0
        assert await svc.milestones.list_milestones(job_id, employer) == []

    @pytest.mark.asyncio
    async def test_amount_too_large_for_ledger(self, svc, job, fund, employer) -> None:
        job_id = job.id
        with pytest.raises(InvalidAmountError) as exc_info:
            await fund(job_id, amount="100000000000000000")
        assert exc_info.value.http_status == 400

        balance = await svc.escrow.get_escrow_balance(job_id, employer)
        assert balance.escrow_balance_minor == 0
        assert await svc.milestones.list_milestones(job_id, employer) == []

    @pytest.mark.asyncio
    async def test_invalid_card_details(self, job, fund, card) -> None:
        with pytest.raises(InvalidPaymentDetailsError):
            await fund(job, details={**card, "card_number": "12"})

    @pytest.mark.asyncio
    async def test_currency_must_match_job(self, svc, job, employer, card, due) -> None:
        spec = MilestoneSpec(title="X", amount=Decimal("10"), due_date=due, currency="EUR")
        with pytest.raises(CurrencyMismatchError):
            await svc.escrow.fund_escrow(job.id, employer, "card", card, milestone_spec=spec)

    @pytest.mark.asyncio
    async def test_only_owner_funds(self, job, fund) -> None:
        stranger = Actor(user_id=uuid.uuid4(), role=ActorRole.EMPLOYER)
        with pytest.raises(NotOwnerError):
            await fund(job, actor=stranger)

    @pytest.mark.asyncio
    async def test_needs_accepted_application(self, open_job, fund) -> None:
        with pytest.raises(CounterpartyNotFoundError):
            await fund(open_job)

    @pytest.mark.asyncio
    async def test_cancelled_job(self, svc, job, fund, employer) -> None:
        job_id = job.id
        await svc.agreements.cancel_job(job_id, employer)
        with pytest.raises(JobNotActiveError):
            await fund(job_id)


class TestReleasePayment:
    @pytest.mark.asyncio
    async def test_requires_completed_milestone(self, svc, job, fund, employer) -> None:
        result = await fund(job)
        with pytest.raises(InvalidTransitionError):
            await svc.escrow.release_payment(result.payment.id, employer)

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, svc, job, fund, employer, freelancer) -> None:
        result = await fund(job)
        await svc.reviews.submit_work(result.milestone.id, freelancer, "Done")
        review = await svc.reviews.review_work(result.milestone.id, employer, "approved")
        assert review.released

        again = await svc.escrow.release_payment(result.payment.id, employer)
        assert again.status == "released"
        balance = await svc.escrow.get_escrow_balance(job.id, employer)
        assert balance.escrow_balance_minor == 0
        assert balance.total_paid_minor == 50_000

    @pytest.mark.asyncio
    async def test_freelancer_cannot_release(self, svc, job, fund, freelancer) -> None:
        result = await fund(job)
        with pytest.raises(NotOwnerError):
            await svc.escrow.release_payment(result.payment.id, freelancer)

    @pytest.mark.asyncio
    async def test_refunded_payment_cannot_be_released(self, svc, job, fund, employer) -> None:
        result = await fund(job)
        await svc.escrow.refund_payment(result.payment.id, employer)
        with pytest.raises(PaymentNotHeldError) as exc_info:
            await svc.escrow.release_payment(result.payment.id, employer)
        assert exc_info.value.code == "NOT_HELD"


class TestRefundPayment:
    @pytest.mark.asyncio
    async def test_refund_returns_funds(self, svc, session, job, fund, employer) -> None:
        result = await fund(job)
        payment = await svc.escrow.refund_payment(result.payment.id, employer)

        assert payment.status == "refunded"
        assert payment.refunded_at is not None
        assert result.milestone.escrow_status == "refunded"
        assert job.escrow_balance_minor == 0
        assert job.total_paid_minor == 0

        notifications = await OutboxRepository(session).list_for_recipient(employer.user_id)
        assert [n.type for n in notifications] == ["payment_refunded"]

    @pytest.mark.asyncio
    async def test_second_refund_rejected(self, svc, job, fund, employer) -> None:
        result = await fund(job)
        payment_id = result.payment.id
        await svc.escrow.refund_payment(payment_id, employer)
        with pytest.raises(PaymentNotHeldError):
            await svc.escrow.refund_payment(payment_id, employer)

    @pytest.mark.asyncio
    async def test_admin_may_refund(self, svc, job, fund, admin) -> None:
        result = await fund(job)
        payment = await svc.escrow.refund_payment(result.payment.id, admin)
        assert payment.status == "refunded"

    @pytest.mark.asyncio
    async def test_freelancer_cannot_refund(self, svc, job, fund, freelancer) -> None:
        result = await fund(job)
        with pytest.raises(NotOwnerError):
            await svc.escrow.refund_payment(result.payment.id, freelancer)

    @pytest.mark.asyncio
    async def test_refunded_milestone_cannot_be_funded_again(
        self, svc, job, fund, employer, card
    ) -> None:
        result = await fund(job)
        await svc.escrow.refund_payment(result.payment.id, employer)
        with pytest.raises(AlreadyFundedError):
            await svc.escrow.fund_escrow(
                job.id, employer, "card", card, milestone_id=result.milestone.id
            )


class TestWithdrawals:
    @pytest.mark.asyncio
    async def test_request_creates_negative_pending_entry(self, svc, freelancer, bank) -> None:
        payment = await svc.escrow.request_withdrawal(freelancer, Decimal("250"), bank)
        assert payment.type == "withdrawal"
        assert payment.status == "pending"
        assert payment.amount_minor == -25_000
        assert payment.job_id is None
        assert payment.freelancer_id == freelancer.user_id
        assert payment.payment_details["account_last4"] == "9012"

    @pytest.mark.asyncio
    async def test_admin_completes(self, svc, freelancer, admin, bank) -> None:
        payment = await svc.escrow.request_withdrawal(freelancer, Decimal("250"), bank)
        completed = await svc.escrow.complete_withdrawal(payment.id, admin)
        assert completed.status == "completed"
        assert completed.completed_at is not None
        assert completed.transaction_id.startswith("txn_")

    @pytest.mark.asyncio
    async def test_completion_is_admin_only(self, svc, freelancer, bank) -> None:
        payment = await svc.escrow.request_withdrawal(freelancer, Decimal("250"), bank)
        with pytest.raises(AuthorizationError) as exc_info:
            await svc.escrow.complete_withdrawal(payment.id, freelancer)
        assert exc_info.value.code == "ADMIN_REQUIRED"

    @pytest.mark.asyncio
    async def test_completed_withdrawal_is_terminal(self, svc, freelancer, admin, bank) -> None:
        payment = await svc.escrow.request_withdrawal(freelancer, Decimal("250"), bank)
        payment_id = payment.id
        await svc.escrow.complete_withdrawal(payment_id, admin)
        with pytest.raises(InvalidTransitionError):
            await svc.escrow.complete_withdrawal(payment_id, admin)

    @pytest.mark.asyncio
    async def test_job_payment_is_not_a_withdrawal(self, svc, job, fund, admin) -> None:
        result = await fund(job)
        with pytest.raises(ValidationError) as exc_info:
            await svc.escrow.complete_withdrawal(result.payment.id, admin)
        assert exc_info.value.code == "NOT_WITHDRAWAL"

    @pytest.mark.asyncio
    async def test_admin_cannot_request(self, svc, admin, bank) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            await svc.escrow.request_withdrawal(admin, Decimal("10"), bank)
        assert exc_info.value.code == "ROLE_REQUIRED"


class TestReads:
    @pytest.mark.asyncio
    async def test_payment_history(self, svc, job, fund, freelancer, bank) -> None:
        funded = await fund(job)
        withdrawal = await svc.escrow.request_withdrawal(freelancer, Decimal("5"), bank)

        history = await svc.escrow.list_payments(freelancer)
        assert {p.id for p in history} == {funded.payment.id, withdrawal.id}

    @pytest.mark.asyncio
    async def test_balance_visible_to_parties_only(
        self, svc, job, fund, freelancer, other_freelancer, admin
    ) -> None:
        await fund(job, amount="75.25")
        balance = await svc.escrow.get_escrow_balance(job.id, freelancer)
        assert balance.escrow_balance_minor == 7_525
        assert balance.currency == "USD"
        assert (await svc.escrow.get_escrow_balance(job.id, admin)).total_paid_minor == 0

        with pytest.raises(AuthorizationError) as exc_info:
            await svc.escrow.get_escrow_balance(job.id, other_freelancer)
        assert exc_info.value.code == "NOT_A_PARTY"
