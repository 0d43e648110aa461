"""Database infrastructure: engine, ORM models, and repositories."""

from milestone_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
)
from milestone_escrow.infrastructure.database.orm_models import (
    AgreementEvent,
    Application,
    Base,
    Job,
    LedgerDiscrepancy,
    Milestone,
    MilestoneSubmission,
    NotificationOutbox,
    Payment,
    Review,
)
from milestone_escrow.infrastructure.database.repositories import (
    ApplicationRepository,
    DiscrepancyRepository,
    EventRepository,
    JobRepository,
    MilestoneRepository,
    OutboxRepository,
    PaymentRepository,
    ReviewRepository,
)

__all__ = [
    "Base",
    "AgreementEvent",
    "Application",
    "Job",
    "LedgerDiscrepancy",
    "Milestone",
    "MilestoneSubmission",
    "NotificationOutbox",
    "Payment",
    "Review",
    "ApplicationRepository",
    "DiscrepancyRepository",
    "EventRepository",
    "JobRepository",
    "MilestoneRepository",
    "OutboxRepository",
    "PaymentRepository",
    "ReviewRepository",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
