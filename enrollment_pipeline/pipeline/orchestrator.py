"""
Enrollment orchestrator.

Owns the enrollment status. Stages never touch it: they return outcome
events, and the orchestrator decides what each event means for the
enrollment. It does not retry anything itself; retries belong to the
stages, and once a stage gives up the enrollment drops back to
``documents_pending`` so it can be resubmitted.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from enrollment_pipeline.config import settings
from enrollment_pipeline.exceptions import NotFound, PreconditionNotMet
from enrollment_pipeline.models.enrollment import (
    AuditLog,
    DocumentStatus,
    Enrollment,
    EnrollmentStatus,
    utcnow,
)
from enrollment_pipeline.models.integration import JobKind
from enrollment_pipeline.pipeline.events import (
    OrchestratorEvent,
    Stage,
    StageFailed,
    StageSucceeded,
    WebhookDeliveryFailed,
)
from enrollment_pipeline.pipeline.queue import JobQueue
from enrollment_pipeline.pipeline.state_machine import RECOVERY_STATUS, TERMINAL_STATUSES, check_transition
from enrollment_pipeline.services import audit
from enrollment_pipeline.services.metrics import metrics
from enrollment_pipeline.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

ACTOR = "enrollment_orchestrator"

# Statuses in which each stage may legitimately be running.
STAGE_STATUSES = {
    Stage.DOCUMENT_OCR: frozenset({EnrollmentStatus.DOCUMENTS_PENDING}),
    Stage.EMR_TRANSMISSION: frozenset({EnrollmentStatus.HEALTH_DECLARATION_PENDING}),
    Stage.INTERVIEW: frozenset({EnrollmentStatus.INTERVIEW_SCHEDULED}),
}

STATUS_EVENTS = {
    EnrollmentStatus.COMPLETED: "enrollment.completed",
    EnrollmentStatus.INTERVIEW_SCHEDULED: "interview.scheduled",
    EnrollmentStatus.INTERVIEW_COMPLETED: "interview.completed",
}


class Orchestrator:
    def __init__(
        self,
        db: Session,
        queue: JobQueue | None = None,
        dispatcher: WebhookDispatcher | None = None,
        required_documents: int | None = None,
    ):
        self.db = db
        self.queue = queue or JobQueue(db)
        self.dispatcher = dispatcher or WebhookDispatcher(db, self.queue)
        self.required_documents = (
            required_documents if required_documents is not None else settings.REQUIRED_DOCUMENTS_COUNT
        )

    def get(self, enrollment_id: uuid.UUID) -> Enrollment:
        enrollment = self.db.get(Enrollment, enrollment_id)
        if enrollment is None:
            raise NotFound(f"Enrollment {enrollment_id} not found")
        return enrollment

    # ------------------------------------------------------------------
    # Single mutation path
    # ------------------------------------------------------------------
    def transition(
        self,
        enrollment_id: uuid.UUID,
        to_status: EnrollmentStatus,
        actor: str = ACTOR,
        stage: Stage | None = None,
        publish: str | None = None,
    ) -> Enrollment:
        """Move the enrollment along one edge of the status graph.

        Raises ``InvalidTransition`` for anything else. Writes the audit
        row, bumps the transition counter and queues the matching webhook
        event in the same commit.
        """
        enrollment = self.get(enrollment_id)
        from_status = EnrollmentStatus(enrollment.status)
        to_status = EnrollmentStatus(to_status)
        check_transition(from_status, to_status)

        enrollment.status = to_status.value
        enrollment.updated_at = utcnow()
        if to_status == EnrollmentStatus.COMPLETED:
            enrollment.completed_at = utcnow()

        audit.log_action(
            self.db,
            actor=actor,
            action="status_transition",
            resource_type="enrollment",
            resource_id=enrollment.id,
            detail={
                "from": from_status.value,
                "to": to_status.value,
                "stage": stage.value if stage else None,
            },
        )
        metrics.increment(
            "enrollment_transitions_total", **{"from": from_status.value, "to": to_status.value}
        )

        event_type = publish or STATUS_EVENTS.get(to_status)
        if event_type:
            self.dispatcher.publish(
                event_type,
                {
                    "enrollment_id": str(enrollment.id),
                    "status": to_status.value,
                    "previous_status": from_status.value,
                    "stage": stage.value if stage else None,
                },
            )
        self.db.commit()
        logger.info(
            "Enrollment %s: %s -> %s (%s)", enrollment.id, from_status.value, to_status.value, actor
        )
        return enrollment

    # ------------------------------------------------------------------
    # Driving the stages
    # ------------------------------------------------------------------
    def advance(self, enrollment_id: uuid.UUID, actor: str = ACTOR) -> str:
        """Trigger whatever the enrollment needs next and name what was done.

        Raises ``PreconditionNotMet`` when nothing can happen yet.
        """
        enrollment = self.get(enrollment_id)
        status = EnrollmentStatus(enrollment.status)

        if status in TERMINAL_STATUSES:
            raise PreconditionNotMet(f"Enrollment {enrollment.id} is {status.value}")

        if status in (EnrollmentStatus.DRAFT, EnrollmentStatus.FAILED):
            self._require_documents(enrollment)
            self.transition(enrollment.id, EnrollmentStatus.DOCUMENTS_PENDING, actor=actor)
            status = EnrollmentStatus.DOCUMENTS_PENDING

        if status == EnrollmentStatus.DOCUMENTS_PENDING:
            self._require_documents(enrollment)
            if not self._documents_ready(enrollment):
                return self._enqueue_ocr(enrollment)
            self.transition(
                enrollment.id,
                EnrollmentStatus.HEALTH_DECLARATION_PENDING,
                actor=actor,
                stage=Stage.DOCUMENT_OCR,
            )
            status = EnrollmentStatus.HEALTH_DECLARATION_PENDING

        if status == EnrollmentStatus.HEALTH_DECLARATION_PENDING:
            if not enrollment.verified_health_records():
                raise PreconditionNotMet(f"Enrollment {enrollment.id} has no verified health record")
            return self._enqueue_emr(enrollment)

        if status == EnrollmentStatus.INTERVIEW_SCHEDULED:
            raise PreconditionNotMet(f"Enrollment {enrollment.id} is waiting for its interview")

        # interview_completed
        self.transition(enrollment.id, EnrollmentStatus.COMPLETED, actor=actor, stage=Stage.INTERVIEW)
        return "completed"

    def _require_documents(self, enrollment: Enrollment) -> None:
        if len(enrollment.documents) < self.required_documents:
            raise PreconditionNotMet(
                f"Enrollment {enrollment.id} needs {self.required_documents} document(s), "
                f"has {len(enrollment.documents)}"
            )

    def _documents_ready(self, enrollment: Enrollment) -> bool:
        return (
            len(enrollment.documents) >= self.required_documents
            and len(enrollment.processed_documents()) == len(enrollment.documents)
        )

    def _enqueue_ocr(self, enrollment: Enrollment) -> str:
        # one OCR job in flight per document
        in_flight = {job.payload.get("document_id") for job in self.queue.active(JobKind.DOCUMENT_OCR)}
        waiting = [
            d
            for d in enrollment.documents
            if d.status in (DocumentStatus.PENDING.value, DocumentStatus.FAILED.value)
            and str(d.id) not in in_flight
        ]
        if not waiting:
            raise PreconditionNotMet(f"OCR already running for enrollment {enrollment.id}")
        for document in waiting:
            self.queue.enqueue(
                JobKind.DOCUMENT_OCR,
                {"document_id": str(document.id), "enrollment_id": str(enrollment.id)},
            )
        self.db.commit()
        return "ocr_enqueued"

    def _enqueue_emr(self, enrollment: Enrollment) -> str:
        self.queue.enqueue(JobKind.EMR_TRANSMISSION, {"enrollment_id": str(enrollment.id)})
        self.db.commit()
        return "emr_enqueued"

    # ------------------------------------------------------------------
    # Stage outcomes
    # ------------------------------------------------------------------
    def handle(self, event: OrchestratorEvent) -> None:
        if isinstance(event, StageSucceeded):
            self.on_stage_succeeded(event.enrollment_id, event.stage, event.subject_id)
        elif isinstance(event, StageFailed):
            self.on_stage_failed(
                event.enrollment_id, event.stage, event.error, event.error_type, event.subject_id
            )
        elif isinstance(event, WebhookDeliveryFailed):
            self.on_webhook_delivery_failed(event)
        else:
            raise TypeError(f"Unhandled event {type(event).__name__}")

    def _stage_active(self, enrollment: Enrollment, stage: Stage) -> bool:
        return EnrollmentStatus(enrollment.status) in STAGE_STATUSES[stage]

    def on_stage_succeeded(
        self, enrollment_id: uuid.UUID, stage: Stage, subject_id: uuid.UUID | None = None
    ) -> None:
        enrollment = self.get(enrollment_id)
        if not self._stage_active(enrollment, stage):
            logger.info("Ignoring %s success for enrollment %s in %s", stage.value, enrollment.id, enrollment.status)
            return

        if stage == Stage.DOCUMENT_OCR:
            if not self._documents_ready(enrollment):
                return
            self.transition(enrollment.id, EnrollmentStatus.HEALTH_DECLARATION_PENDING, stage=stage)
            if enrollment.verified_health_records():
                self._enqueue_emr(enrollment)
        elif stage == Stage.EMR_TRANSMISSION:
            next_status = (
                EnrollmentStatus.INTERVIEW_SCHEDULED
                if enrollment.requires_interview()
                else EnrollmentStatus.COMPLETED
            )
            self.transition(enrollment.id, next_status, stage=stage)
        else:
            self.transition(enrollment.id, EnrollmentStatus.INTERVIEW_COMPLETED, stage=stage)

    def on_stage_failed(
        self,
        enrollment_id: uuid.UUID,
        stage: Stage,
        error: str,
        error_type: str = "",
        subject_id: uuid.UUID | None = None,
    ) -> None:
        """Drop the enrollment back to ``documents_pending`` and announce the failure."""
        enrollment = self.get(enrollment_id)
        if not self._stage_active(enrollment, stage):
            logger.info("Ignoring %s failure for enrollment %s in %s", stage.value, enrollment.id, enrollment.status)
            return

        failure_key = f"{stage.value}:{subject_id or enrollment.id}"
        if self._failure_already_recorded(enrollment, failure_key):
            return

        audit.log_action(
            self.db,
            actor=ACTOR,
            action="stage_failed",
            resource_type="enrollment",
            resource_id=enrollment.id,
            detail={
                "failure_key": failure_key,
                "stage": stage.value,
                "error_type": error_type,
                "error": error,
                "subject_id": str(subject_id) if subject_id else None,
            },
        )
        metrics.increment("stage_failures_total", stage=stage.value)
        logger.error("Stage %s failed for enrollment %s: %s", stage.value, enrollment.id, error_type)

        if EnrollmentStatus(enrollment.status) == RECOVERY_STATUS:
            self.dispatcher.publish(
                "enrollment.failed",
                {
                    "enrollment_id": str(enrollment.id),
                    "status": enrollment.status,
                    "stage": stage.value,
                    "error_type": error_type,
                },
            )
            self.db.commit()
            return

        self.transition(enrollment.id, RECOVERY_STATUS, stage=stage, publish="enrollment.failed")

    def _failure_already_recorded(self, enrollment: Enrollment, failure_key: str) -> bool:
        """True if this failure was already handled since the last status change."""
        rows = self.db.scalars(
            select(AuditLog)
            .where(
                AuditLog.resource_type == "enrollment",
                AuditLog.resource_id == str(enrollment.id),
                AuditLog.action.in_(("status_transition", "stage_failed")),
            )
            .order_by(AuditLog.timestamp.desc())
        )
        for row in rows:
            if row.action == "status_transition":
                return False
            if (row.detail or {}).get("failure_key") == failure_key:
                return True
        return False

    def on_webhook_delivery_failed(self, event: WebhookDeliveryFailed) -> None:
        """Flag the subscriber for operations. Never changes an enrollment."""
        existing = self.db.scalars(
            select(AuditLog).where(
                AuditLog.action == "webhook_subscription_flagged",
                AuditLog.resource_id == str(event.subscription_id),
            )
        )
        if any((row.detail or {}).get("delivery_id") == str(event.delivery_id) for row in existing):
            return
        audit.log_action(
            self.db,
            actor=ACTOR,
            action="webhook_subscription_flagged",
            resource_type="webhook_subscription",
            resource_id=event.subscription_id,
            detail={
                "delivery_id": str(event.delivery_id),
                "event_type": event.event_type,
                "attempts": event.attempts,
                "error": event.error,
            },
        )
        self.db.commit()
        logger.warning(
            "Subscription %s flagged: delivery %s exhausted %d attempts",
            event.subscription_id,
            event.delivery_id,
            event.attempts,
        )

    # ------------------------------------------------------------------
    # Collaborator signals
    # ------------------------------------------------------------------
    def record_interview_completed(self, enrollment_id: uuid.UUID, actor: str) -> Enrollment:
        enrollment = self.get(enrollment_id)
        if EnrollmentStatus(enrollment.status) in (
            EnrollmentStatus.INTERVIEW_COMPLETED,
            EnrollmentStatus.COMPLETED,
        ):
            return enrollment
        return self.transition(
            enrollment.id, EnrollmentStatus.INTERVIEW_COMPLETED, actor=actor, stage=Stage.INTERVIEW
        )

    def withdraw(self, enrollment_id: uuid.UUID, actor: str) -> Enrollment:
        return self.transition(enrollment_id, EnrollmentStatus.WITHDRAWN, actor=actor)

    def audit_trail(self, enrollment_id: uuid.UUID) -> list[AuditLog]:
        enrollment = self.get(enrollment_id)
        return list(
            self.db.scalars(
                select(AuditLog)
                .where(
                    AuditLog.resource_type == "enrollment",
                    AuditLog.resource_id == str(enrollment.id),
                )
                .order_by(AuditLog.timestamp)
            )
        )
