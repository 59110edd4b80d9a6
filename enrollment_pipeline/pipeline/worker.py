"""
Queue worker.

Claims one job at a time, runs the handler for its kind, settles the job
according to the outcome and hands enrollment-level events to the
orchestrator.
"""

from __future__ import annotations

import logging
import socket
import time
import uuid
from typing import Callable

from sqlalchemy.orm import Session

from enrollment_pipeline.exceptions import InvalidDocument, PipelineError
from enrollment_pipeline.models.enrollment import Document, DocumentStatus
from enrollment_pipeline.models.integration import Job, JobKind
from enrollment_pipeline.pipeline.context import PipelineContext
from enrollment_pipeline.pipeline.emr_stage import EmrTransmissionStage
from enrollment_pipeline.pipeline.events import (
    AlreadyProcessing,
    Deferred,
    JobOutcome,
    RetryScheduled,
    Skipped,
    Stage,
    StageFailed,
    StageSucceeded,
    WebhookDelivered,
    WebhookDeliveryFailed,
)
from enrollment_pipeline.pipeline.orchestrator import Orchestrator
from enrollment_pipeline.pipeline.queue import JobQueue
from enrollment_pipeline.services.webhooks import WebhookDeliverer

logger = logging.getLogger(__name__)


class Worker:
    def __init__(self, db: Session, context: PipelineContext, worker_id: str | None = None):
        self.db = db
        self.context = context
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.queue = JobQueue(db, clock=context.clock)
        self.orchestrator = Orchestrator(db, queue=self.queue)
        self._handlers: dict[str, Callable[[Job], JobOutcome]] = {
            JobKind.DOCUMENT_OCR.value: self._run_ocr,
            JobKind.EMR_TRANSMISSION.value: self._run_emr,
            JobKind.WEBHOOK_DELIVERY.value: self._run_webhook,
        }

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _run_ocr(self, job: Job) -> JobOutcome:
        document = self.db.get(Document, uuid.UUID(job.payload["document_id"]))
        if document is None:
            return Skipped(f"document {job.payload['document_id']} no longer exists")
        try:
            return self.context.ocr.submit(self.db, document, attempt=job.attempt)
        except InvalidDocument as exc:
            document.status = DocumentStatus.FAILED.value
            document.failure_reason = "InvalidDocument"
            self.db.commit()
            return StageFailed(
                document.enrollment_id,
                Stage.DOCUMENT_OCR,
                error_type=type(exc).__name__,
                error=str(exc),
                subject_id=document.id,
            )

    def _run_emr(self, job: Job) -> JobOutcome:
        stage = EmrTransmissionStage(
            self.db, self.context.converter, self.context.emr_client, self.context.locks
        )
        return stage.run(uuid.UUID(job.payload["enrollment_id"]))

    def _run_webhook(self, job: Job) -> JobOutcome:
        deliverer = WebhookDeliverer(
            self.db,
            self.context.breakers,
            locks=self.context.locks,
            session=self.context.webhook_session,
            clock=self.context.clock,
        )
        return deliverer.deliver(job.payload, attempt=job.attempt)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    def run_once(self) -> bool:
        """Process one job. Returns False when nothing was available."""
        job = self.queue.claim(self.worker_id)
        if job is None:
            return False

        logger.info("Worker %s running %s job %s (attempt %d)", self.worker_id, job.kind, job.id, job.attempt)
        try:
            outcome = self._handlers[job.kind](job)
        except PipelineError as exc:
            self.db.rollback()
            self.queue.dead_letter(job, f"{type(exc).__name__}: {exc}")
            return True

        self.settle(job, outcome)
        return True

    def settle(self, job: Job, outcome: JobOutcome) -> None:
        if isinstance(outcome, RetryScheduled):
            self.queue.retry(job, outcome.delay, outcome.reason)
        elif isinstance(outcome, Deferred):
            self.queue.defer(job, outcome.delay, outcome.reason)
        elif isinstance(outcome, (AlreadyProcessing, Skipped, WebhookDelivered)):
            self.queue.complete(job)
        elif isinstance(outcome, StageSucceeded):
            self.queue.complete(job)
            self.orchestrator.handle(outcome)
        elif isinstance(outcome, (StageFailed, WebhookDeliveryFailed)):
            self.queue.dead_letter(job, f"{type(outcome).__name__}: {outcome.error}")
            self.orchestrator.handle(outcome)
        else:
            raise TypeError(f"Unhandled outcome {type(outcome).__name__}")

    def drain(self, max_jobs: int = 1000) -> int:
        """Run every job that is available now. Returns how many ran."""
        processed = 0
        while processed < max_jobs and self.run_once():
            processed += 1
        return processed

    def run_forever(
        self,
        poll_interval: float,
        stale_after: float | None = None,
        max_idle_polls: int | None = None,
    ) -> None:
        idle = 0
        while max_idle_polls is None or idle < max_idle_polls:
            if stale_after:
                self.queue.requeue_stale(stale_after)
            if self.run_once():
                idle = 0
                continue
            idle += 1
            time.sleep(poll_interval)
