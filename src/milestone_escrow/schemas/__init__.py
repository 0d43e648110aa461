"""Pydantic API schemas."""

from milestone_escrow.schemas.agreements import (
    AgreementResponse,
    ApplicationRequest,
    ApplicationResponse,
    CloseJobRequest,
    CounterpartyResponse,
    CreateJobRequest,
    JobResponse,
)
from milestone_escrow.schemas.common import DispatchResponse, ErrorResponse, HealthResponse
from milestone_escrow.schemas.milestones import (
    FileMeta,
    MilestoneResponse,
    MilestoneSpecSchema,
    ReviewWorkRequest,
    SubmissionResponse,
    SubmitWorkRequest,
    UpdateStatusRequest,
)
from milestone_escrow.schemas.payments import (
    DiscrepancyResponse,
    EscrowBalanceResponse,
    FundEscrowRequest,
    FundEscrowResponse,
    PaymentResponse,
    ReconciliationResponse,
    ReviewResultResponse,
    WithdrawalRequest,
)

__all__ = [
    "AgreementResponse",
    "ApplicationRequest",
    "ApplicationResponse",
    "CloseJobRequest",
    "CounterpartyResponse",
    "CreateJobRequest",
    "DiscrepancyResponse",
    "DispatchResponse",
    "ErrorResponse",
    "EscrowBalanceResponse",
    "FileMeta",
    "FundEscrowRequest",
    "FundEscrowResponse",
    "HealthResponse",
    "JobResponse",
    "MilestoneResponse",
    "MilestoneSpecSchema",
    "PaymentResponse",
    "ReconciliationResponse",
    "ReviewResultResponse",
    "ReviewWorkRequest",
    "SubmissionResponse",
    "SubmitWorkRequest",
    "UpdateStatusRequest",
    "WithdrawalRequest",
]
