"""Schemas shared by every router."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Body of every domain error answered by the API."""

    error: str = Field(description="Stable error code, e.g. NOT_OWNER or NOT_HELD")
    message: str
    retryable: bool = False


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"


class DispatchResponse(BaseModel):
    """Outcome of one outbox dispatch pass."""

    delivered: int
    failed: int
