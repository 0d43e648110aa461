"""Pydantic schemas for milestones, submissions and reviews.

Blank descriptions, missing rejection comments and unknown decisions are left
to the domain layer so they come back with their own error codes.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field, computed_field

from milestone_escrow.domain.money import MAX_MAJOR_AMOUNT, to_major
from milestone_escrow.domain.progress import effective_status as derive_effective_status
from milestone_escrow.services.base import MilestoneSpec

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class MilestoneSpecSchema(BaseModel):
    """A new milestone, in major units."""

    title: str = Field(..., max_length=200, examples=["Wireframes"])
    amount: Decimal = Field(..., gt=0, le=MAX_MAJOR_AMOUNT, examples=["500.00"])
    due_date: datetime
    description: str | None = Field(default=None, max_length=10_000)
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    def to_spec(self) -> MilestoneSpec:
        return MilestoneSpec(
            title=self.title,
            amount=self.amount,
            due_date=self.due_date,
            description=self.description,
            currency=self.currency,
        )


class UpdateStatusRequest(BaseModel):
    status: str = Field(..., examples=["in-progress", "completed"])


class FileMeta(BaseModel):
    """Metadata of an uploaded deliverable. The bytes live elsewhere."""

    filename: str = Field(..., max_length=255)
    original_name: str | None = Field(default=None, max_length=255)
    path: str = Field(default="", max_length=1024)
    size: int = Field(default=0, ge=0)
    mimetype: str | None = Field(default=None, max_length=255)


class SubmitWorkRequest(BaseModel):
    description: str = Field(..., max_length=20_000)
    files: list[FileMeta] = Field(default_factory=list)


class ReviewWorkRequest(BaseModel):
    decision: str = Field(..., description="'approved' or 'rejected'", examples=["approved"])
    comment: str | None = Field(default=None, max_length=5000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class SubmissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    description: str
    files: list[dict]
    submitted_at: datetime
    review_status: str
    review_comment: str | None
    reviewed_at: datetime | None
    reviewed_by: uuid.UUID | None


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    title: str
    description: str | None
    amount_minor: int
    currency: str
    due_date: datetime
    status: str
    escrow_status: str
    payment_id: uuid.UUID | None
    completed_at: datetime | None
    created_at: datetime
    submission: SubmissionResponse | None = None

    @computed_field
    @property
    def amount(self) -> Decimal:
        return to_major(self.amount_minor, self.currency)

    @computed_field
    @property
    def effective_status(self) -> str:
        """``overdue`` once an open milestone is past its due date."""
        return derive_effective_status(self.status, self.due_date)
