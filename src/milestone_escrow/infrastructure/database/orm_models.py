"""SQLAlchemy 2.0 ORM models for the milestone escrow service.

Tables:
    1. jobs                   : The agreement: employer, status, running balances.
    2. applications           : Freelancer applications; at most one accepted per job.
    3. milestones             : Payable units of work with status and escrow status.
    4. milestone_submissions  : The deliverable metadata and review outcome (1:1).
    5. payments               : The ledger. Terminal rows are never mutated again.
    6. reviews                : Closing reviews recorded when a job is closed.
    7. agreement_events       : Append-only audit log of every transition.
    8. notification_outbox    : Lifecycle notifications awaiting delivery.
    9. ledger_discrepancies   : Reconciliation queue for ledger inconsistencies.

Design decisions:
    - UUID primary keys; the portable Uuid type keeps SQLite usable for tests.
    - Money as BIGINT minor units plus a currency code. No floats, no Numeric.
    - Optimistic ``version`` columns on jobs and payments.
    - CHECK constraints on status strings and on non-negative balances.
    - A partial unique index enforces a single accepted application per job.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. jobs
# ---------------------------------------------------------------------------
class Job(Base):
    """A job posted by an employer. Paired with its accepted application it
    forms the agreement."""

    __tablename__ = "jobs"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Parties ---
    employer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        comment="User id of the owning employer",
    )
    freelancer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        default=None,
        comment="Cached freelancer of the accepted application (never authoritative)",
    )

    # --- Description ---
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    budget_minor: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Advertised budget in minor units (display only)",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # --- Status ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="open",
        comment="Lifecycle state (guarded by JobStateMachine)",
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Derived from milestones; written only by the progress aggregator",
    )

    # --- Running balances ---
    escrow_balance_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Funds currently held in escrow, minor units",
    )
    total_paid_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Funds released to the freelancer to date, minor units",
    )

    # --- Concurrency ---
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'in-progress', 'completed', 'closed', 'cancelled')",
            name="ck_job_valid_status",
        ),
        CheckConstraint("escrow_balance_minor >= 0", name="ck_job_escrow_non_negative"),
        CheckConstraint("total_paid_minor >= 0", name="ck_job_paid_non_negative"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_job_progress_bounds"),
        Index("idx_job_employer", "employer_id"),
        Index("idx_job_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Job id={self.id} status={self.status} "
            f"escrow={self.escrow_balance_minor} paid={self.total_paid_minor} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 2. applications
# ---------------------------------------------------------------------------
class Application(Base):
    """A freelancer's application to a job."""

    __tablename__ = "applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    freelancer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    cover_letter: Mapped[str] = mapped_column(Text, nullable=False)
    expected_rate_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'withdrawn')",
            name="ck_application_valid_status",
        ),
        UniqueConstraint("job_id", "freelancer_id", name="uq_application_job_freelancer"),
        # One accepted application per job, whatever the service layer does.
        Index(
            "uq_application_one_accepted",
            "job_id",
            unique=True,
            postgresql_where=text("status = 'accepted'"),
            sqlite_where=text("status = 'accepted'"),
        ),
        Index("idx_application_job", "job_id"),
    )

    def __repr__(self) -> str:
        return f"<Application id={self.id} job={self.job_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 3. milestones
# ---------------------------------------------------------------------------
class Milestone(Base):
    """A payable unit of work. ``overdue`` is derived on read, never stored."""

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )

    # --- Definition ---
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # --- Two orthogonal state axes ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Work axis (guarded by MilestoneStateMachine)",
    )
    escrow_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="unfunded",
        comment="Funding axis (guarded by MilestoneEscrowStateMachine)",
    )
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=True,
        default=None,
        comment="The held/released funding entry",
    )

    # --- Timestamps ---
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    # --- Relationships ---
    submission: Mapped[MilestoneSubmission | None] = relationship(
        "MilestoneSubmission",
        back_populates="milestone",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in-progress', 'completed')",
            name="ck_milestone_valid_status",
        ),
        CheckConstraint(
            "escrow_status IN ('unfunded', 'funded', 'released', 'refunded')",
            name="ck_milestone_valid_escrow_status",
        ),
        CheckConstraint("amount_minor > 0", name="ck_milestone_positive_amount"),
        Index("idx_milestone_job", "job_id"),
        Index("idx_milestone_due_date", "due_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Milestone id={self.id} status={self.status} "
            f"escrow={self.escrow_status} amount={self.amount_minor} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 4. milestone_submissions
# ---------------------------------------------------------------------------
class MilestoneSubmission(Base):
    """The freelancer's deliverable for a milestone, plus the employer's review.

    The submitter is not stored: it is always the job's accepted freelancer.
    """

    __tablename__ = "milestone_submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # --- Content ---
    description: Mapped[str] = mapped_column(Text, nullable=False)
    files: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="File metadata: [{filename, original_name, path, size, mimetype}]",
    )
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    # --- Review ---
    review_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    review_comment: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, default=None)

    milestone: Mapped[Milestone] = relationship("Milestone", back_populates="submission")

    __table_args__ = (
        CheckConstraint(
            "review_status IN ('pending', 'approved', 'rejected')",
            name="ck_submission_valid_review_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<MilestoneSubmission milestone={self.milestone_id} review={self.review_status}>"


# ---------------------------------------------------------------------------
# 5. payments (the ledger)
# ---------------------------------------------------------------------------
class Payment(Base):
    """A ledger entry. Once released, refunded or completed it is never updated."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    amount_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Signed amount in minor units; negative for withdrawals",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # --- Links (nullable depending on type) ---
    job_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="RESTRICT"),
        nullable=True,
    )
    # No FK: milestones reference payments, not the other way round.
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    employer_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    freelancer_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # --- Instrument (masked) ---
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_details: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        default=None,
        comment="Masked instrument: card last4/brand/expiry or account last4/bank/IFSC",
    )
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "type IN ('job_payment', 'withdrawal', 'deposit')",
            name="ck_payment_valid_type",
        ),
        CheckConstraint(
            "status IN ('pending', 'held', 'released', 'refunded', 'completed')",
            name="ck_payment_valid_status",
        ),
        CheckConstraint(
            "(type = 'withdrawal' AND amount_minor < 0) "
            "OR (type <> 'withdrawal' AND amount_minor > 0)",
            name="ck_payment_signed_amount",
        ),
        Index("idx_payment_job", "job_id"),
        Index("idx_payment_milestone", "milestone_id"),
        Index("idx_payment_employer", "employer_id"),
        Index("idx_payment_freelancer", "freelancer_id"),
        Index("idx_payment_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment id={self.id} type={self.type} status={self.status} "
            f"amount={self.amount_minor} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 6. reviews
# ---------------------------------------------------------------------------
class Review(Base):
    """A closing review. Recording one is a precondition for closing a job."""

    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    reviewer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    reviewee_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False)
    skills: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    communication: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quality: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timeliness: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("job_id", "reviewer_id", name="uq_review_job_reviewer"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_bounds"),
    )


# ---------------------------------------------------------------------------
# 7. agreement_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class AgreementEvent(Base):
    """Immutable audit record of every transition on an agreement or the ledger.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "agreement_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=True,
        comment="Null only for withdrawals, which have no job",
    )
    # No FKs: deleted milestones keep their audit trail.
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    event_type: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="EventType enum value (e.g., ESCROW_FUNDED, WORK_APPROVED)",
    )
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="User id that triggered the event, or SYSTEM",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_job", "job_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AgreementEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 8. notification_outbox
# ---------------------------------------------------------------------------
class NotificationOutbox(Base):
    """A notification recorded with its triggering transaction, delivered later."""

    __tablename__ = "notification_outbox"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # --- Delivery state ---
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'delivered', 'failed')",
            name="ck_outbox_valid_status",
        ),
        Index("idx_outbox_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<NotificationOutbox id={self.id} type={self.type} status={self.status}>"


# ---------------------------------------------------------------------------
# 9. ledger_discrepancies
# ---------------------------------------------------------------------------
class LedgerDiscrepancy(Base):
    """An inconsistency between the ledger and a job's running balances."""

    __tablename__ = "ledger_discrepancies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    detail: Mapped[str] = mapped_column(Text, nullable=False)

    # --- Balances at detection time ---
    expected_escrow_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    actual_escrow_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    expected_paid_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    actual_paid_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "kind IN ('release_failed', 'balance_mismatch')",
            name="ck_discrepancy_valid_kind",
        ),
        Index("idx_discrepancy_job", "job_id"),
        Index("idx_discrepancy_resolved", "resolved"),
    )

    def __repr__(self) -> str:
        return f"<LedgerDiscrepancy id={self.id} kind={self.kind} resolved={self.resolved}>"


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
for _model in (Job, Application, Milestone, Payment):
    event.listen(_model, "before_update", _set_updated_at)
