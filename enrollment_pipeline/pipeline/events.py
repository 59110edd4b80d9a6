"""
Stage outcomes.

A closed set of tagged results returned by every job handler. The worker
acts on the scheduling outcomes (retry, defer, skip); the orchestrator
consumes the ones that matter to an enrollment or to operations.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class Stage(str, Enum):
    DOCUMENT_OCR = "document_ocr"
    EMR_TRANSMISSION = "emr_transmission"
    INTERVIEW = "interview"


@dataclass(frozen=True)
class StageSucceeded:
    enrollment_id: uuid.UUID
    stage: Stage
    subject_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class StageFailed:
    enrollment_id: uuid.UUID
    stage: Stage
    error_type: str
    error: str
    subject_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class RetryScheduled:
    delay: float
    reason: str


@dataclass(frozen=True)
class Deferred:
    """Fast-fail (breaker open, rate limited): reschedule without spending an attempt."""

    delay: float
    reason: str


@dataclass(frozen=True)
class AlreadyProcessing:
    key: str


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class WebhookDelivered:
    delivery_id: uuid.UUID
    subscription_id: uuid.UUID
    attempt: int


@dataclass(frozen=True)
class WebhookDeliveryFailed:
    delivery_id: uuid.UUID
    subscription_id: uuid.UUID
    event_type: str
    attempts: int
    error: str


OrchestratorEvent = Union[StageSucceeded, StageFailed, WebhookDeliveryFailed]
SchedulingOutcome = Union[RetryScheduled, Deferred, AlreadyProcessing, Skipped]
JobOutcome = Union[OrchestratorEvent, SchedulingOutcome, WebhookDelivered]
