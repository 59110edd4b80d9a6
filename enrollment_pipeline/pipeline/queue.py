"""
Durable job queue on the ``jobs`` table.

At-least-once: a worker claims a job with a compare-and-set update
(queued -> running) and the job is only marked done after its handler
returns. A worker that dies leaves its job running until
``requeue_stale`` hands it back, so handlers must be idempotent.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from enrollment_pipeline.models.integration import Job, JobKind, JobStatus

logger = logging.getLogger(__name__)


class JobQueue:
    def __init__(self, db: Session, clock: Callable[[], float] = time.time):
        self.db = db
        self._clock = clock

    def enqueue(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        delay: float = 0.0,
        attempt: int = 1,
    ) -> Job:
        job = Job(
            kind=JobKind(kind).value,
            payload=payload,
            status=JobStatus.QUEUED.value,
            attempt=attempt,
            available_at=self._clock() + delay,
        )
        self.db.add(job)
        self.db.flush()
        logger.info("Enqueued %s job %s (delay %.0fs)", job.kind, job.id, delay)
        return job

    def claim(self, worker_id: str, batch: int = 10) -> Job | None:
        """Claim the oldest available job, or return None when the queue is idle."""
        now = self._clock()
        candidates = self.db.scalars(
            select(Job)
            .where(Job.status == JobStatus.QUEUED.value, Job.available_at <= now)
            .order_by(Job.available_at)
            .limit(batch)
        ).all()
        for job in candidates:
            result = self.db.execute(
                update(Job)
                .where(Job.id == job.id, Job.status == JobStatus.QUEUED.value)
                .values(status=JobStatus.RUNNING.value, claimed_by=worker_id, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if result.rowcount == 1:
                self.db.refresh(job)
                return job
        return None

    def complete(self, job: Job) -> None:
        job.status = JobStatus.DONE.value
        self.db.commit()

    def retry(self, job: Job, delay: float, error: str | None = None) -> None:
        """Put the job back for its next attempt."""
        job.status = JobStatus.QUEUED.value
        job.attempt = job.attempt + 1
        job.available_at = self._clock() + delay
        job.last_error = error
        job.claimed_by = None
        self.db.commit()

    def defer(self, job: Job, delay: float, reason: str | None = None) -> None:
        """Reschedule without consuming an attempt."""
        job.status = JobStatus.QUEUED.value
        job.available_at = self._clock() + delay
        job.last_error = reason
        job.claimed_by = None
        self.db.commit()

    def dead_letter(self, job: Job, error: str) -> None:
        job.status = JobStatus.DEAD.value
        job.last_error = error
        self.db.commit()
        logger.error("Job %s (%s) dead-lettered: %s", job.id, job.kind, error)

    def requeue_stale(self, older_than_seconds: float) -> int:
        """Return jobs claimed by workers that stopped reporting."""
        cutoff = self._clock() - older_than_seconds
        result = self.db.execute(
            update(Job)
            .where(Job.status == JobStatus.RUNNING.value, Job.claimed_at < cutoff)
            .values(status=JobStatus.QUEUED.value, claimed_by=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount:
            logger.warning("Requeued %d stale jobs", result.rowcount)
        return result.rowcount

    def pending(self, kind: JobKind | None = None) -> list[Job]:
        query = select(Job).where(Job.status == JobStatus.QUEUED.value)
        if kind is not None:
            query = query.where(Job.kind == JobKind(kind).value)
        return list(self.db.scalars(query.order_by(Job.available_at)))

    def active(self, kind: JobKind) -> list[Job]:
        """Jobs of ``kind`` that are queued or currently claimed by a worker."""
        return list(
            self.db.scalars(
                select(Job).where(
                    Job.kind == JobKind(kind).value,
                    Job.status.in_((JobStatus.QUEUED.value, JobStatus.RUNNING.value)),
                )
            )
        )
