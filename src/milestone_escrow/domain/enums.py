"""Domain enumerations for the milestone escrow workflow.

Values are the persisted strings (lower-case, hyphenated where the marketplace
API always used hyphens). Framework-agnostic: no SQLAlchemy, no FastAPI.
"""

import enum


class ActorRole(enum.StrEnum):
    """Role claimed by the authenticated caller."""

    EMPLOYER = "employer"
    FREELANCER = "freelancer"
    ADMIN = "admin"


class JobStatus(enum.StrEnum):
    """Lifecycle of a job (the agreement)."""

    OPEN = "open"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class ApplicationStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class MilestoneStatus(enum.StrEnum):
    """Work axis of a milestone.

    OVERDUE is never stored. It is the label a pending or in-progress
    milestone reads as once its due date has passed.
    """

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class EscrowStatus(enum.StrEnum):
    """Funding axis of a milestone, orthogonal to MilestoneStatus."""

    UNFUNDED = "unfunded"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"


class ReviewStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(enum.StrEnum):
    """What an employer may decide when reviewing a submission."""

    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentType(enum.StrEnum):
    JOB_PAYMENT = "job_payment"
    WITHDRAWAL = "withdrawal"
    DEPOSIT = "deposit"


class PaymentStatus(enum.StrEnum):
    """Ledger entry states. RELEASED, REFUNDED and COMPLETED are terminal."""

    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in {PaymentStatus.RELEASED, PaymentStatus.REFUNDED, PaymentStatus.COMPLETED}


class PaymentMethod(enum.StrEnum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class EventType(enum.StrEnum):
    """Audit events recorded in the agreement_events table.

    Every state transition writes exactly one event. The table is append-only.
    """

    # Agreement
    JOB_CREATED = "JOB_CREATED"
    APPLICATION_SUBMITTED = "APPLICATION_SUBMITTED"
    APPLICATION_ACCEPTED = "APPLICATION_ACCEPTED"
    APPLICATION_REJECTED = "APPLICATION_REJECTED"
    APPLICATION_WITHDRAWN = "APPLICATION_WITHDRAWN"
    JOB_CLOSED = "JOB_CLOSED"
    JOB_CANCELLED = "JOB_CANCELLED"

    # Milestones
    MILESTONE_CREATED = "MILESTONE_CREATED"
    MILESTONE_STARTED = "MILESTONE_STARTED"
    MILESTONE_COMPLETED = "MILESTONE_COMPLETED"
    MILESTONE_DELETED = "MILESTONE_DELETED"
    WORK_SUBMITTED = "WORK_SUBMITTED"
    WORK_APPROVED = "WORK_APPROVED"
    WORK_REJECTED = "WORK_REJECTED"

    # Ledger
    ESCROW_FUNDED = "ESCROW_FUNDED"
    ESCROW_RELEASED = "ESCROW_RELEASED"
    ESCROW_REFUNDED = "ESCROW_REFUNDED"
    WITHDRAWAL_REQUESTED = "WITHDRAWAL_REQUESTED"
    WITHDRAWAL_COMPLETED = "WITHDRAWAL_COMPLETED"
    LEDGER_DISCREPANCY = "LEDGER_DISCREPANCY"


class NotificationType(enum.StrEnum):
    """Lifecycle notifications relayed to the inbox subsystem."""

    MILESTONE_FUNDED = "milestone_funded"
    WORK_SUBMITTED = "work_submitted"
    WORK_APPROVED = "work_approved"
    WORK_REJECTED = "work_rejected"
    MILESTONE_COMPLETED = "milestone_completed"
    PAYMENT_RELEASED = "payment_released"
    PAYMENT_REFUNDED = "payment_refunded"
    APPLICATION_ACCEPTED = "application_accepted"
    PROJECT_COMPLETED = "project_completed"
    REVIEW_RECEIVED = "review_received"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"


class OutboxStatus(enum.StrEnum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class DiscrepancyKind(enum.StrEnum):
    """Why a ledger discrepancy was opened."""

    RELEASE_FAILED = "release_failed"
    BALANCE_MISMATCH = "balance_mismatch"
