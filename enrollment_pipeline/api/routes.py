"""
FastAPI routes for operators and collaborators.

Enrollment status is read here and nudged forward through the
orchestrator; nothing in this module changes a status directly.
"""

from __future__ import annotations

import json
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from enrollment_pipeline.config import settings
from enrollment_pipeline.exceptions import NotFound, SignatureError, ValidationError
from enrollment_pipeline.models.database import get_db
from enrollment_pipeline.models.integration import WebhookDeliveryAttempt, WebhookSubscription
from enrollment_pipeline.pipeline.orchestrator import Orchestrator
from enrollment_pipeline.schemas.api import (
    ActorRequest,
    AdvanceResponse,
    AuditEntryResponse,
    CallbackReceipt,
    DeliveryAttemptResponse,
    DocumentResponse,
    EnrollmentResponse,
    HealthResponse,
)
from enrollment_pipeline.services.audit import log_action
from enrollment_pipeline.services.metrics import metrics
from enrollment_pipeline.services.webhooks import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()


def get_orchestrator(db: Session = Depends(get_db)) -> Orchestrator:
    return Orchestrator(db)


def _enrollment_response(orchestrator: Orchestrator, enrollment_id: UUID) -> EnrollmentResponse:
    enrollment = orchestrator.get(enrollment_id)
    return EnrollmentResponse(
        id=enrollment.id,
        status=enrollment.status,
        requires_interview=enrollment.requires_interview(),
        created_at=enrollment.created_at,
        updated_at=enrollment.updated_at,
        completed_at=enrollment.completed_at,
        documents=[DocumentResponse.model_validate(d) for d in enrollment.documents],
    )


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


@router.get("/metrics")
def metrics_exposition() -> Response:
    """Prometheus text exposition of the pipeline counters."""
    return Response(content=metrics.exposition(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Enrollments
# ---------------------------------------------------------------------------

@router.get("/enrollments/{enrollment_id}", response_model=EnrollmentResponse)
def get_enrollment(enrollment_id: UUID, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return _enrollment_response(orchestrator, enrollment_id)


@router.post(
    "/enrollments/{enrollment_id}/advance",
    response_model=AdvanceResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def advance_enrollment(enrollment_id: UUID, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Trigger the next stage. 409 if the enrollment is not ready for one."""
    action = orchestrator.advance(enrollment_id, actor="api_user")
    enrollment = orchestrator.get(enrollment_id)
    return AdvanceResponse(enrollment_id=enrollment.id, status=enrollment.status, action=action)


@router.post("/enrollments/{enrollment_id}/interview-completed", response_model=EnrollmentResponse)
def interview_completed(
    enrollment_id: UUID,
    request: ActorRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    orchestrator.record_interview_completed(enrollment_id, actor=request.actor)
    return _enrollment_response(orchestrator, enrollment_id)


@router.post("/enrollments/{enrollment_id}/withdraw", response_model=EnrollmentResponse)
def withdraw_enrollment(
    enrollment_id: UUID,
    request: ActorRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    orchestrator.withdraw(enrollment_id, actor=request.actor)
    return _enrollment_response(orchestrator, enrollment_id)


@router.get("/enrollments/{enrollment_id}/audit", response_model=list[AuditEntryResponse])
def enrollment_audit_trail(
    enrollment_id: UUID, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    return orchestrator.audit_trail(enrollment_id)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

@router.get(
    "/webhooks/subscriptions/{subscription_id}/attempts",
    response_model=list[DeliveryAttemptResponse],
)
def delivery_attempts(subscription_id: UUID, db: Session = Depends(get_db)):
    """Delivery ledger for one subscriber, oldest first."""
    if db.get(WebhookSubscription, subscription_id) is None:
        raise NotFound(f"Webhook subscription {subscription_id} not found")
    return db.scalars(
        select(WebhookDeliveryAttempt)
        .where(WebhookDeliveryAttempt.subscription_id == subscription_id)
        .order_by(WebhookDeliveryAttempt.created_at, WebhookDeliveryAttempt.attempt_number)
    ).all()


async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/webhooks/emr", response_model=CallbackReceipt)
def emr_callback(
    raw: bytes = Depends(raw_body),
    x_webhook_signature: str = Header(default=""),
    db: Session = Depends(get_db),
):
    """Signed status callback from the EMR. 401 unless the signature checks out."""
    if not settings.EMR_WEBHOOK_SECRET:
        raise SignatureError("EMR callback secret is not configured")
    try:
        body = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError("Callback body is not valid UTF-8") from exc
    verify_signature(settings.EMR_WEBHOOK_SECRET, body, x_webhook_signature)

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise ValidationError("Callback body is not valid JSON") from exc
    if not isinstance(event, dict):
        raise ValidationError("Callback body must be a JSON object")

    log_action(
        db,
        actor="emr",
        action="emr_callback_received",
        resource_type=event.get("resourceType", "unknown"),
        resource_id=event.get("id", "unknown"),
        detail={"event": event.get("event")},
    )
    db.commit()
    return CallbackReceipt(event=event.get("event"))
