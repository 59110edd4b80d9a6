"""
Document OCR pipeline.

Submits an uploaded document to the OCR provider, polls the asynchronous
job to completion (bounded), and accepts the extraction only when the
weakest line clears the document type's confidence threshold.

Each call to ``OcrPipeline.submit`` is one attempt. Retries are not run
inline: the pipeline returns ``RetryScheduled`` and the worker puts the
job back on the queue with the delay the retry policy chose.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.orm import Session

from enrollment_pipeline.config import settings
from enrollment_pipeline.exceptions import (
    CircuitOpen,
    IntegrationError,
    InvalidDocument,
    LowConfidence,
    RateLimited,
    RetryableIntegrationError,
    TerminalIntegrationError,
    ThrottlingError,
)
from enrollment_pipeline.models.enrollment import Document, DocumentStatus, utcnow
from enrollment_pipeline.pipeline.events import (
    AlreadyProcessing,
    Deferred,
    JobOutcome,
    RetryScheduled,
    Skipped,
    Stage,
    StageFailed,
    StageSucceeded,
)
from enrollment_pipeline.services import audit
from enrollment_pipeline.services.circuit_breaker import CircuitBreaker
from enrollment_pipeline.services.encryption import FieldCodec
from enrollment_pipeline.services.locks import ProcessingLocks, lock_key
from enrollment_pipeline.services.metrics import metrics
from enrollment_pipeline.services.rate_limit import SlidingWindowRateLimiter
from enrollment_pipeline.services.retry import (
    Fail,
    RetryPolicy,
    fixed_backoff,
    is_transient_or_low_confidence,
)

logger = logging.getLogger(__name__)

TARGET = "ocr"
LOW_CONFIDENCE = "LowConfidence"

THROTTLING_CODES = frozenset(
    {"ThrottlingException", "ProvisionedThroughputExceededException", "RequestLimitExceeded"}
)
TRANSIENT_CODES = frozenset({"InternalServerError", "ServiceUnavailable"})


# ---------------------------------------------------------------------------
# Provider boundary
# ---------------------------------------------------------------------------
class JobState:
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class OcrLine:
    text: str
    confidence: float  # 0.0 - 1.0


@dataclass(frozen=True)
class OcrResult:
    status: str
    lines: list[OcrLine] = field(default_factory=list)
    message: str | None = None

    @property
    def finished(self) -> bool:
        return self.status != JobState.IN_PROGRESS


class OcrProvider(Protocol):
    def start(self, storage_path: str) -> str:
        """Start an asynchronous extraction job and return its id."""
        ...

    def poll(self, job_id: str) -> OcrResult:
        ...


class TextractOcrProvider:
    """AWS Textract document analysis over documents stored in S3."""

    def __init__(self, client: Any = None, bucket: str | None = None, region: str | None = None):
        self._client = client or boto3.client("textract", region_name=region or settings.AWS_REGION)
        self._bucket = bucket or settings.OCR_S3_BUCKET

    def start(self, storage_path: str) -> str:
        response = self._call(
            self._client.start_document_analysis,
            DocumentLocation={"S3Object": {"Bucket": self._bucket, "Name": storage_path}},
            FeatureTypes=["FORMS", "TABLES"],
        )
        return response["JobId"]

    def poll(self, job_id: str) -> OcrResult:
        lines: list[OcrLine] = []
        next_token = None
        while True:
            kwargs = {"JobId": job_id}
            if next_token:
                kwargs["NextToken"] = next_token
            response = self._call(self._client.get_document_analysis, **kwargs)

            status = response.get("JobStatus", JobState.IN_PROGRESS)
            if status in (JobState.IN_PROGRESS, JobState.FAILED):
                return OcrResult(status=status, message=response.get("StatusMessage"))

            for block in response.get("Blocks", []):
                if block.get("BlockType") == "LINE":
                    lines.append(
                        OcrLine(
                            text=block.get("Text", ""),
                            confidence=float(block.get("Confidence", 0.0)) / 100.0,
                        )
                    )
            next_token = response.get("NextToken")
            if not next_token:
                return OcrResult(status=status, lines=lines)

    @staticmethod
    def _call(fn: Callable[..., dict], **kwargs) -> dict:
        try:
            return fn(**kwargs)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            message = f"Textract {code}: {exc}"
            if code in THROTTLING_CODES:
                raise ThrottlingError(message, target=TARGET) from exc
            if code in TRANSIENT_CODES:
                raise RetryableIntegrationError(message, target=TARGET) from exc
            raise TerminalIntegrationError(message, target=TARGET) from exc
        except BotoCoreError as exc:
            raise RetryableIntegrationError(f"Textract unreachable: {exc}", target=TARGET) from exc


def aggregate_confidence(lines: list[OcrLine]) -> float:
    """The weakest line decides; a document with no text has confidence 0."""
    if not lines:
        return 0.0
    return min(line.confidence for line in lines)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
class OcrPipeline:
    def __init__(
        self,
        provider: OcrProvider,
        breaker: CircuitBreaker,
        codec: FieldCodec,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        locks: ProcessingLocks | None = None,
        thresholds: dict[str, float] | None = None,
        retry_policy: RetryPolicy | None = None,
        max_polls: int | None = None,
        poll_interval: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._provider = provider
        self._breaker = breaker
        self._codec = codec
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            TARGET, settings.OCR_RATE_LIMIT_CALLS, settings.OCR_RATE_LIMIT_WINDOW_SECONDS
        )
        self._locks = locks or ProcessingLocks()
        self._thresholds = dict(settings.OCR_CONFIDENCE_THRESHOLDS)
        if thresholds:
            self._thresholds.update(thresholds)
        self._retry_policy = retry_policy or fixed_backoff(
            settings.OCR_MAX_ATTEMPTS,
            settings.OCR_RETRY_BACKOFF_SECONDS,
            retryable=is_transient_or_low_confidence,
        )
        self._max_polls = max_polls or settings.OCR_MAX_POLLS
        self._poll_interval = poll_interval if poll_interval is not None else settings.OCR_POLL_INTERVAL_SECONDS
        self._sleep = sleep

    def threshold_for(self, document_type: str) -> float:
        return self._thresholds.get(document_type, settings.OCR_DEFAULT_CONFIDENCE_THRESHOLD)

    @staticmethod
    def check_document(document: Document) -> None:
        """Reject documents the provider cannot take."""
        file_type = (document.file_type or "").lower()
        if file_type not in settings.OCR_ALLOWED_FILE_TYPES:
            raise InvalidDocument(f"Unsupported file type '{document.file_type}'")
        if document.size_bytes > settings.OCR_MAX_FILE_SIZE_BYTES:
            raise InvalidDocument(
                f"Document is {document.size_bytes} bytes, limit is {settings.OCR_MAX_FILE_SIZE_BYTES}"
            )

    def submit(self, db: Session, document: Document, attempt: int = 1) -> JobOutcome:
        """Run one OCR attempt for ``document``.

        Raises ``InvalidDocument`` for unsupported files. Otherwise returns
        the outcome: succeeded, failed for good, retry later, defer (breaker
        open or rate limited), or skip (already processed or locked).
        """
        self.check_document(document)
        if document.status == DocumentStatus.PROCESSED.value:
            logger.info("Document %s already processed, nothing to do", document.id)
            return Skipped("document already processed")

        with self._locks.hold(TARGET, document.id) as acquired:
            if not acquired:
                return AlreadyProcessing(lock_key(TARGET, document.id))

            try:
                self._breaker.before_call()
                self._rate_limiter.acquire()
            except (CircuitOpen, RateLimited) as exc:
                logger.warning("OCR for document %s deferred: %s", document.id, exc)
                return Deferred(exc.retry_after, str(exc))

            document.status = DocumentStatus.PROCESSING.value
            document.attempts = attempt
            db.commit()

            try:
                lines = self._extract(document)
            except IntegrationError as exc:
                self._breaker.record_failure()
                audit.log_integration_failure(
                    db,
                    target=TARGET,
                    resource_type="document",
                    resource_id=document.id,
                    error=exc,
                    attempt=attempt,
                )
                return self._fail_attempt(db, document, attempt, exc, type(exc).__name__)
            self._breaker.record_success()

            return self._evaluate(db, document, attempt, lines)

    def _extract(self, document: Document) -> list[OcrLine]:
        job_id = self._provider.start(document.storage_path)
        logger.info("OCR job %s started for document %s", job_id, document.id)
        for _ in range(self._max_polls):
            result = self._provider.poll(job_id)
            if result.status == JobState.FAILED:
                raise TerminalIntegrationError(
                    f"OCR job {job_id} failed: {result.message or 'no reason given'}",
                    target=TARGET,
                )
            if result.finished:
                return result.lines
            self._sleep(self._poll_interval)
        raise RetryableIntegrationError(
            f"OCR job {job_id} still running after {self._max_polls} polls", target=TARGET
        )

    def _evaluate(
        self, db: Session, document: Document, attempt: int, lines: list[OcrLine]
    ) -> JobOutcome:
        confidence = aggregate_confidence(lines)
        threshold = self.threshold_for(document.document_type)
        document.ocr_confidence = confidence
        document.ocr_data = {
            "line_count": len(lines),
            "lines": self._codec.encrypt(
                [{"text": line.text, "confidence": line.confidence} for line in lines]
            ),
        }

        if confidence < threshold:
            return self._fail_attempt(
                db, document, attempt, LowConfidence(confidence, threshold), LOW_CONFIDENCE
            )

        document.status = DocumentStatus.PROCESSED.value
        document.failure_reason = None
        document.processed_at = utcnow()
        db.commit()
        metrics.increment("ocr_documents_total", outcome="processed")
        logger.info(
            "Document %s processed (confidence %.4f >= %.4f)", document.id, confidence, threshold
        )
        return StageSucceeded(document.enrollment_id, Stage.DOCUMENT_OCR, document.id)

    def _fail_attempt(
        self, db: Session, document: Document, attempt: int, error: Exception, reason: str
    ) -> JobOutcome:
        document.status = DocumentStatus.FAILED.value
        document.failure_reason = reason
        action = self._retry_policy(attempt, error)
        db.commit()

        if isinstance(action, Fail):
            metrics.increment("ocr_documents_total", outcome="failed")
            logger.error("OCR for document %s failed for good: %s (%s)", document.id, error, action.reason)
            return StageFailed(
                document.enrollment_id,
                Stage.DOCUMENT_OCR,
                error_type=type(error).__name__,
                error=str(error),
                subject_id=document.id,
            )

        metrics.increment("ocr_documents_total", outcome="retry")
        logger.warning(
            "OCR attempt %d for document %s failed (%s), retrying in %.0fs",
            attempt,
            document.id,
            reason,
            action.delay,
        )
        return RetryScheduled(action.delay, reason)
