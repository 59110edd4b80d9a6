"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enrollments
# ---------------------------------------------------------------------------

class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    document_type: str
    file_type: str
    status: str
    ocr_confidence: float | None = None
    failure_reason: str | None = None
    attempts: int = 0
    processed_at: datetime | None = None


class EnrollmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: str
    requires_interview: bool
    created_at: datetime
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    documents: list[DocumentResponse] = []


class AdvanceResponse(BaseModel):
    enrollment_id: UUID
    status: str
    action: str


class ActorRequest(BaseModel):
    """Identity of the collaborator reporting a signal (interviewer, operator)."""
    actor: str = Field(..., min_length=1, max_length=128)


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor: str
    action: str
    resource_type: str
    resource_id: str
    detail: dict[str, Any] | None = None
    timestamp: datetime


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class DeliveryAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    delivery_id: UUID
    event_type: str
    attempt_number: int
    outcome: str
    status_code: int | None = None
    error: str | None = None
    retry_delay_seconds: float | None = None
    scheduled_retry_at: datetime | None = None
    created_at: datetime


class CallbackReceipt(BaseModel):
    received: bool = True
    event: str | None = None


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
