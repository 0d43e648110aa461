"""Tests for the centralized authorization policy."""

from __future__ import annotations

import uuid

import pytest

from milestone_escrow.domain.enums import ActorRole
from milestone_escrow.domain.exceptions import (
    AuthorizationError,
    NotAssignedFreelancerError,
    NotOwnerError,
)
from milestone_escrow.domain.policy import (
    Actor,
    AgreementContext,
    Operation,
    authorize,
    can_perform,
)

EMPLOYER_ID = uuid.UUID("00000000-0000-0000-0000-00000000000e")
FREELANCER_ID = uuid.UUID("00000000-0000-0000-0000-00000000000f")
STRANGER_ID = uuid.UUID("00000000-0000-0000-0000-000000000005")

EMPLOYER = Actor(EMPLOYER_ID, ActorRole.EMPLOYER)
FREELANCER = Actor(FREELANCER_ID, ActorRole.FREELANCER)
ADMIN = Actor(uuid.uuid4(), ActorRole.ADMIN)
CONTEXT = AgreementContext(employer_id=EMPLOYER_ID, freelancer_id=FREELANCER_ID)


class TestEmployerOperations:
    @pytest.mark.parametrize(
        "operation",
        [Operation.FUND_ESCROW, Operation.REVIEW_WORK, Operation.RELEASE_PAYMENT],
    )
    def test_owner_allowed(self, operation: Operation) -> None:
        assert can_perform(EMPLOYER, operation, CONTEXT)

    def test_other_employer_denied(self) -> None:
        other = Actor(STRANGER_ID, ActorRole.EMPLOYER)
        with pytest.raises(NotOwnerError):
            authorize(other, Operation.FUND_ESCROW, CONTEXT)

    def test_freelancer_cannot_review(self) -> None:
        assert not can_perform(FREELANCER, Operation.REVIEW_WORK, CONTEXT)

    def test_role_must_match_identity(self) -> None:
        # The employer's id presented with the freelancer role is not the owner.
        impostor = Actor(EMPLOYER_ID, ActorRole.FREELANCER)
        assert not can_perform(impostor, Operation.FUND_ESCROW, CONTEXT)

    def test_admin_cannot_fund(self) -> None:
        assert not can_perform(ADMIN, Operation.FUND_ESCROW, CONTEXT)


class TestFreelancerOperations:
    def test_counterparty_may_submit(self) -> None:
        authorize(FREELANCER, Operation.SUBMIT_WORK, CONTEXT)

    def test_other_freelancer_denied(self) -> None:
        other = Actor(STRANGER_ID, ActorRole.FREELANCER)
        with pytest.raises(NotAssignedFreelancerError):
            authorize(other, Operation.SUBMIT_WORK, CONTEXT)

    def test_no_counterparty_yet(self) -> None:
        context = AgreementContext(employer_id=EMPLOYER_ID)
        assert not can_perform(FREELANCER, Operation.START_MILESTONE, context)


class TestSharedOperations:
    def test_both_parties_view_escrow(self) -> None:
        assert can_perform(EMPLOYER, Operation.VIEW_ESCROW, CONTEXT)
        assert can_perform(FREELANCER, Operation.VIEW_ESCROW, CONTEXT)
        assert can_perform(ADMIN, Operation.VIEW_ESCROW, CONTEXT)

    def test_stranger_cannot_view(self) -> None:
        stranger = Actor(STRANGER_ID, ActorRole.FREELANCER)
        with pytest.raises(AuthorizationError) as exc_info:
            authorize(stranger, Operation.VIEW_AGREEMENT, CONTEXT)
        assert exc_info.value.code == "NOT_A_PARTY"

    def test_admin_may_refund(self) -> None:
        assert can_perform(ADMIN, Operation.REFUND_PAYMENT, CONTEXT)

    def test_freelancer_may_not_refund(self) -> None:
        assert not can_perform(FREELANCER, Operation.REFUND_PAYMENT, CONTEXT)


class TestRoleOperations:
    def test_only_employers_create_jobs(self) -> None:
        assert can_perform(EMPLOYER, Operation.CREATE_JOB)
        with pytest.raises(AuthorizationError) as exc_info:
            authorize(FREELANCER, Operation.CREATE_JOB)
        assert exc_info.value.code == "ROLE_REQUIRED"

    def test_only_freelancers_apply(self) -> None:
        assert can_perform(FREELANCER, Operation.APPLY)
        assert not can_perform(EMPLOYER, Operation.APPLY)

    def test_reconcile_is_admin_only(self) -> None:
        authorize(ADMIN, Operation.RECONCILE)
        with pytest.raises(AuthorizationError) as exc_info:
            authorize(EMPLOYER, Operation.RECONCILE, CONTEXT)
        assert exc_info.value.code == "ADMIN_REQUIRED"
        assert exc_info.value.http_status == 403
