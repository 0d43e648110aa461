"""Domain layer: pure business rules with no web or database dependencies."""

from milestone_escrow.domain.enums import (
    ActorRole,
    EscrowStatus,
    EventType,
    JobStatus,
    MilestoneStatus,
    PaymentStatus,
    PaymentType,
)
from milestone_escrow.domain.escrow_account import EscrowAccount, derive_from_ledger
from milestone_escrow.domain.exceptions import (
    EscrowError,
    InvalidTransitionError,
    LedgerInconsistencyError,
)
from milestone_escrow.domain.notifications import NotificationEvent, NotificationSink
from milestone_escrow.domain.policy import (
    Actor,
    AgreementContext,
    Operation,
    authorize,
    can_perform,
)
from milestone_escrow.domain.progress import compute_progress, effective_status
from milestone_escrow.domain.state_machine import (
    JobStateMachine,
    MilestoneEscrowStateMachine,
    MilestoneStateMachine,
    PaymentStateMachine,
    fire_transition,
    validate_transition,
)

__all__ = [
    "ActorRole",
    "EscrowStatus",
    "EventType",
    "JobStatus",
    "MilestoneStatus",
    "PaymentStatus",
    "PaymentType",
    "EscrowAccount",
    "derive_from_ledger",
    "EscrowError",
    "InvalidTransitionError",
    "LedgerInconsistencyError",
    "NotificationEvent",
    "NotificationSink",
    "Actor",
    "AgreementContext",
    "Operation",
    "authorize",
    "can_perform",
    "compute_progress",
    "effective_status",
    "JobStateMachine",
    "MilestoneEscrowStateMachine",
    "MilestoneStateMachine",
    "PaymentStateMachine",
    "fire_transition",
    "validate_transition",
]
