"""Pydantic schemas for escrow funding, the payment ledger and reconciliation."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from milestone_escrow.domain.money import MAX_MAJOR_AMOUNT, to_major
from milestone_escrow.schemas.milestones import MilestoneResponse, MilestoneSpecSchema

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class FundEscrowRequest(BaseModel):
    """Fund a new milestone (``milestone``) or an existing one (``milestone_id``)."""

    job_id: uuid.UUID
    payment_method: str = Field(..., examples=["card", "bank_transfer"])
    payment_details: dict[str, Any] = Field(
        ...,
        description=(
            "card: card_number, brand, expiry_month, expiry_year. "
            "bank_transfer: account_number, bank_name, ifsc_code"
        ),
    )
    milestone: MilestoneSpecSchema | None = None
    milestone_id: uuid.UUID | None = None
    idempotency_key: str | None = Field(
        default=None,
        max_length=200,
        description="Optional key that makes a retried funding request a no-op",
    )


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, le=MAX_MAJOR_AMOUNT, examples=["250.00"])
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    bank_details: dict[str, Any] = Field(
        ..., description="account_number, bank_name, ifsc_code"
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: str
    status: str
    amount_minor: int
    currency: str
    job_id: uuid.UUID | None
    milestone_id: uuid.UUID | None
    employer_id: uuid.UUID | None
    freelancer_id: uuid.UUID | None
    payment_method: str | None
    payment_details: dict | None
    transaction_id: str | None
    created_at: datetime
    released_at: datetime | None
    refunded_at: datetime | None
    completed_at: datetime | None

    @computed_field
    @property
    def amount(self) -> Decimal:
        return to_major(self.amount_minor, self.currency)


class FundEscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment: PaymentResponse
    milestone: MilestoneResponse


class EscrowBalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    currency: str
    escrow_balance_minor: int
    total_paid_minor: int
    progress: int

    @computed_field
    @property
    def escrow_balance(self) -> Decimal:
        return to_major(self.escrow_balance_minor, self.currency)

    @computed_field
    @property
    def total_paid(self) -> Decimal:
        return to_major(self.total_paid_minor, self.currency)


class DiscrepancyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    payment_id: uuid.UUID | None
    kind: str
    detail: str
    expected_escrow_minor: int | None
    actual_escrow_minor: int | None
    expected_paid_minor: int | None
    actual_paid_minor: int | None
    resolved: bool
    resolved_at: datetime | None
    created_at: datetime


class ReconciliationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    consistent: bool
    expected_escrow_minor: int
    actual_escrow_minor: int
    expected_paid_minor: int
    actual_paid_minor: int
    payments_checked: int
    discrepancy: DiscrepancyResponse | None = None


class ReviewResultResponse(BaseModel):
    """Outcome of a review. ``discrepancy`` is set when the release was queued."""

    model_config = ConfigDict(from_attributes=True)

    milestone: MilestoneResponse
    payment: PaymentResponse | None = None
    released: bool = False
    discrepancy: DiscrepancyResponse | None = None
