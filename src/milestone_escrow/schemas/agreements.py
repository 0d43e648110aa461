"""Pydantic schemas for jobs, applications and the agreement they form.

Money crosses the API as decimal major units. Responses carry the stored
minor-unit integers alongside the converted major amounts.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field, computed_field

from milestone_escrow.domain.money import MAX_MAJOR_AMOUNT, to_major

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateJobRequest(BaseModel):
    """Request body for posting a job."""

    title: str = Field(..., max_length=200, examples=["Marketing site redesign"])
    description: str | None = Field(default=None, max_length=20_000)
    budget: Decimal | None = Field(
        default=None,
        gt=0,
        le=MAX_MAJOR_AMOUNT,
        description="Advertised budget in major units (display only)",
        examples=["1500.00"],
    )
    currency: str | None = Field(
        default=None,
        min_length=3,
        max_length=3,
        description="ISO-4217 code; defaults to the service currency",
        examples=["USD"],
    )


class ApplicationRequest(BaseModel):
    """Request body for a freelancer applying to a job."""

    cover_letter: str = Field(..., max_length=10_000)
    expected_rate: Decimal | None = Field(default=None, gt=0, le=MAX_MAJOR_AMOUNT)


class CloseJobRequest(BaseModel):
    """The employer's closing review of the freelancer."""

    rating: int = Field(..., description="Overall rating, 1 to 5")
    comment: str = Field(..., max_length=5000)
    skills: list[str] = Field(default_factory=list)
    communication: int | None = None
    quality: int | None = None
    timeliness: int | None = None


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employer_id: uuid.UUID
    freelancer_id: uuid.UUID | None
    title: str
    description: str | None
    currency: str
    status: str
    progress: int
    budget_minor: int | None
    escrow_balance_minor: int
    total_paid_minor: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @computed_field
    @property
    def budget(self) -> Decimal | None:
        if self.budget_minor is None:
            return None
        return to_major(self.budget_minor, self.currency)

    @computed_field
    @property
    def escrow_balance(self) -> Decimal:
        return to_major(self.escrow_balance_minor, self.currency)

    @computed_field
    @property
    def total_paid(self) -> Decimal:
        return to_major(self.total_paid_minor, self.currency)


class AgreementResponse(BaseModel):
    """A job together with the freelancer resolved from its accepted application."""

    model_config = ConfigDict(from_attributes=True)

    job: JobResponse
    freelancer_id: uuid.UUID | None


class CounterpartyResponse(BaseModel):
    job_id: uuid.UUID
    freelancer_id: uuid.UUID


class ApplicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    freelancer_id: uuid.UUID
    cover_letter: str
    expected_rate_minor: int | None
    status: str
    created_at: datetime
