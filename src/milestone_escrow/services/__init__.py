"""Application services: use case orchestration."""

from milestone_escrow.services.agreement_service import (
    AgreementService,
    AgreementView,
    ClosingReview,
)
from milestone_escrow.services.base import JobScopedService, MilestoneSpec
from milestone_escrow.services.escrow_service import EscrowBalance, EscrowService, FundingResult
from milestone_escrow.services.milestone_service import MilestoneService
from milestone_escrow.services.payment_service import PaymentService
from milestone_escrow.services.progress_service import ProgressAggregator
from milestone_escrow.services.reconciliation import ReconciliationReport, ReconciliationService
from milestone_escrow.services.review_service import ReviewResult, ReviewService

__all__ = [
    "AgreementService",
    "AgreementView",
    "ClosingReview",
    "EscrowBalance",
    "EscrowService",
    "FundingResult",
    "JobScopedService",
    "MilestoneService",
    "MilestoneSpec",
    "PaymentService",
    "ProgressAggregator",
    "ReconciliationReport",
    "ReconciliationService",
    "ReviewResult",
    "ReviewService",
]
