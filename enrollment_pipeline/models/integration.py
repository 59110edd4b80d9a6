"""
Reliability bookkeeping tables: circuit breaker state, processing locks,
rate-limit windows, the durable job queue, webhook subscriptions and the
delivery ledger.

Timestamps that take part in comparisons (expiry, cooldown, availability)
are stored as epoch seconds so workers can compare them against an
injected clock without timezone round-trips.
"""

import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from enrollment_pipeline.models.database import Base, JSONType
from enrollment_pipeline.models.enrollment import utcnow


class JobKind(str, Enum):
    DOCUMENT_OCR = "document_ocr"
    EMR_TRANSMISSION = "emr_transmission"
    WEBHOOK_DELIVERY = "webhook_delivery"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    DEAD = "dead"


class DeliveryOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


# ---------------------------------------------------------------------------
# Circuit breaker state – one row per integration target
# ---------------------------------------------------------------------------
class CircuitBreakerState(Base):
    __tablename__ = "circuit_breakers"

    key = Column(String(128), primary_key=True, comment="ocr | emr | webhook:<subscription id>")
    state = Column(String(16), nullable=False, default="closed")
    failure_count = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(Float, nullable=False, default=0.0)
    opened_at = Column(Float, nullable=False, default=0.0)
    trial_started_at = Column(Float, nullable=False, default=0.0)
    version = Column(Integer, nullable=False, default=0, comment="Compare-and-set counter")


# ---------------------------------------------------------------------------
# Processing lock – TTL-bound mutual exclusion per (operation, entity)
# ---------------------------------------------------------------------------
class ProcessingLock(Base):
    __tablename__ = "processing_locks"

    key = Column(String(160), primary_key=True, comment="<operation>:<entity id>")
    owner = Column(String(64), nullable=False)
    expires_at = Column(Float, nullable=False)


# ---------------------------------------------------------------------------
# Rate limit window – admitted call timestamps per outbound target
# ---------------------------------------------------------------------------
class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"

    key = Column(String(128), primary_key=True, comment="ocr")
    hits = Column(JSONType, nullable=False, comment="Epoch seconds of admitted calls")
    version = Column(Integer, nullable=False, default=0, comment="Compare-and-set counter")


# ---------------------------------------------------------------------------
# Job – durable at-least-once work queue
# ---------------------------------------------------------------------------
class Job(Base):
    __tablename__ = "jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    kind = Column(SAEnum(*[k.value for k in JobKind], name="job_kind_enum"), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(
        SAEnum(*[s.value for s in JobStatus], name="job_status_enum"),
        nullable=False,
        default=JobStatus.QUEUED.value,
    )
    attempt = Column(Integer, nullable=False, default=1)
    available_at = Column(Float, nullable=False, default=0.0)
    claimed_by = Column(String(64), nullable=True)
    claimed_at = Column(Float, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_jobs_status_available", "status", "available_at"),)


# ---------------------------------------------------------------------------
# Webhook subscription – managed by an external admin collaborator
# ---------------------------------------------------------------------------
class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    url = Column(Text, nullable=False)
    secret = Column(String(256), nullable=False)
    events = Column(JSONType, nullable=False, default=list)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Delivery attempt – append-only ledger, one row per attempt
# ---------------------------------------------------------------------------
class WebhookDeliveryAttempt(Base):
    __tablename__ = "webhook_delivery_attempts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    delivery_id = Column(Uuid, nullable=False)
    subscription_id = Column(Uuid, nullable=False)
    event_type = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False, comment="Serialized JSON that was signed")
    signature = Column(String(256), nullable=False)
    attempt_number = Column(Integer, nullable=False)
    outcome = Column(
        SAEnum(*[o.value for o in DeliveryOutcome], name="delivery_outcome_enum"),
        nullable=False,
    )
    status_code = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    retry_delay_seconds = Column(Float, nullable=True)
    scheduled_retry_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("delivery_id", "attempt_number", name="uq_delivery_attempt"),
        Index("ix_delivery_subscription", "subscription_id"),
    )
