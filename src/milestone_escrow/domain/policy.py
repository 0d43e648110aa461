"""Centralized authorization policy.

Every state-changing operation asks ``authorize(actor, operation, context)``
before touching storage, instead of each call site re-implementing its own
"is this the employer" check.

The freelancer in an ``AgreementContext`` is always the one resolved from the
accepted Application, never the cached ``Job.freelancer_id``.
"""

from __future__ import annotations

import enum
import uuid  # noqa: TC003 - used in dataclass fields at runtime
from dataclasses import dataclass

from milestone_escrow.domain.enums import ActorRole
from milestone_escrow.domain.exceptions import (
    AuthorizationError,
    NotAssignedFreelancerError,
    NotOwnerError,
)


@dataclass(frozen=True)
class Actor:
    """The caller, as asserted by the external identity provider."""

    user_id: uuid.UUID
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


@dataclass(frozen=True)
class AgreementContext:
    """The two parties of a job, as far as authorization is concerned."""

    employer_id: uuid.UUID
    freelancer_id: uuid.UUID | None = None


class Operation(enum.StrEnum):
    # Agreement
    CREATE_JOB = "create_job"
    APPLY = "apply_to_job"
    VIEW_AGREEMENT = "view_agreement"
    ACCEPT_APPLICATION = "accept_application"
    REJECT_APPLICATION = "reject_application"
    WITHDRAW_APPLICATION = "withdraw_application"
    CLOSE_JOB = "close_job"
    CANCEL_JOB = "cancel_job"

    # Milestones
    CREATE_MILESTONE = "create_milestone"
    DELETE_MILESTONE = "delete_milestone"
    START_MILESTONE = "start_milestone"
    COMPLETE_MILESTONE = "complete_milestone"
    SUBMIT_WORK = "submit_work"
    REVIEW_WORK = "review_work"

    # Ledger
    FUND_ESCROW = "fund_escrow"
    RELEASE_PAYMENT = "release_payment"
    REFUND_PAYMENT = "refund_payment"
    VIEW_ESCROW = "view_escrow"
    REQUEST_WITHDRAWAL = "request_withdrawal"
    COMPLETE_WITHDRAWAL = "complete_withdrawal"
    RECONCILE = "reconcile"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


_EMPLOYER_OPERATIONS = frozenset(
    {
        Operation.ACCEPT_APPLICATION,
        Operation.REJECT_APPLICATION,
        Operation.CLOSE_JOB,
        Operation.CREATE_MILESTONE,
        Operation.DELETE_MILESTONE,
        Operation.COMPLETE_MILESTONE,
        Operation.REVIEW_WORK,
        Operation.FUND_ESCROW,
        Operation.RELEASE_PAYMENT,
    }
)

# For WITHDRAW_APPLICATION the context carries the applicant as freelancer.
_FREELANCER_OPERATIONS = frozenset(
    {Operation.START_MILESTONE, Operation.SUBMIT_WORK, Operation.WITHDRAW_APPLICATION}
)

# The job's employer or an admin.
_EMPLOYER_OR_ADMIN_OPERATIONS = frozenset({Operation.REFUND_PAYMENT, Operation.CANCEL_JOB})

# Either party or an admin.
_PARTY_OPERATIONS = frozenset({Operation.VIEW_AGREEMENT, Operation.VIEW_ESCROW})

_ADMIN_OPERATIONS = frozenset({Operation.COMPLETE_WITHDRAWAL, Operation.RECONCILE})


def _is_owner(actor: Actor, context: AgreementContext | None) -> bool:
    return (
        context is not None
        and actor.role == ActorRole.EMPLOYER
        and actor.user_id == context.employer_id
    )


def _is_counterparty(actor: Actor, context: AgreementContext | None) -> bool:
    return (
        context is not None
        and context.freelancer_id is not None
        and actor.role == ActorRole.FREELANCER
        and actor.user_id == context.freelancer_id
    )


def can_perform(
    actor: Actor,
    operation: Operation,
    context: AgreementContext | None = None,
) -> bool:
    """Return whether ``actor`` may perform ``operation`` on the agreement."""
    if operation == Operation.CREATE_JOB:
        return actor.role == ActorRole.EMPLOYER
    if operation == Operation.APPLY:
        return actor.role == ActorRole.FREELANCER
    if operation == Operation.REQUEST_WITHDRAWAL:
        return actor.role in (ActorRole.EMPLOYER, ActorRole.FREELANCER)
    if operation in _EMPLOYER_OPERATIONS:
        return _is_owner(actor, context)
    if operation in _FREELANCER_OPERATIONS:
        return _is_counterparty(actor, context)
    if operation in _EMPLOYER_OR_ADMIN_OPERATIONS:
        return actor.is_admin or _is_owner(actor, context)
    if operation in _PARTY_OPERATIONS:
        return actor.is_admin or _is_owner(actor, context) or _is_counterparty(actor, context)
    if operation in _ADMIN_OPERATIONS:
        return actor.is_admin
    return False


def authorize(
    actor: Actor,
    operation: Operation,
    context: AgreementContext | None = None,
) -> None:
    """Raise the matching AuthorizationError unless ``can_perform`` allows it."""
    if can_perform(actor, operation, context):
        return

    if operation in _FREELANCER_OPERATIONS:
        raise NotAssignedFreelancerError(operation.label)
    if operation in _ADMIN_OPERATIONS:
        raise AuthorizationError(f"Only an admin may {operation.label}", code="ADMIN_REQUIRED")
    if operation == Operation.CREATE_JOB:
        raise AuthorizationError("Only employers may create jobs", code="ROLE_REQUIRED")
    if operation == Operation.APPLY:
        raise AuthorizationError("Only freelancers may apply to jobs", code="ROLE_REQUIRED")
    if operation == Operation.REQUEST_WITHDRAWAL:
        raise AuthorizationError(
            "Only employers and freelancers may request withdrawals", code="ROLE_REQUIRED"
        )
    if operation in _PARTY_OPERATIONS:
        raise AuthorizationError(
            f"Only the parties to this job may {operation.label}", code="NOT_A_PARTY"
        )
    raise NotOwnerError(operation.label)
