"""Tests for the document OCR pipeline and the Textract provider."""

from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from enrollment_pipeline.exceptions import (
    InvalidDocument,
    RetryableIntegrationError,
    TerminalIntegrationError,
    ThrottlingError,
)
from enrollment_pipeline.models.enrollment import AuditLog, DocumentStatus, DocumentType
from enrollment_pipeline.pipeline.events import (
    AlreadyProcessing,
    Deferred,
    RetryScheduled,
    Skipped,
    Stage,
    StageFailed,
    StageSucceeded,
)
from enrollment_pipeline.services.ocr import (
    JobState,
    OcrLine,
    TextractOcrProvider,
    aggregate_confidence,
)


def _document(make_enrollment, **kwargs):
    return make_enrollment(**kwargs).documents[0]


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

def test_aggregate_confidence_is_the_weakest_line():
    lines = [OcrLine("a", 0.999), OcrLine("b", 0.97), OcrLine("c", 0.995)]
    assert aggregate_confidence(lines) == 0.97
    assert aggregate_confidence([]) == 0.0


def test_document_processed_when_confidence_meets_threshold(db, make_enrollment, ocr_pipeline, codec):
    document = _document(make_enrollment)
    outcome = ocr_pipeline.submit(db, document, attempt=1)

    assert outcome == StageSucceeded(document.enrollment_id, Stage.DOCUMENT_OCR, document.id)
    assert document.status == DocumentStatus.PROCESSED.value
    assert document.ocr_confidence == pytest.approx(0.995)
    assert document.processed_at is not None
    assert codec.decrypt(document.ocr_data["lines"])[0]["text"] == "line 0"


def test_low_confidence_fails_document_and_schedules_retry(db, make_enrollment, ocr_pipeline, ocr_provider):
    ocr_provider.confidences = [0.999, 0.98]  # below the 0.99 id_document threshold
    document = _document(make_enrollment)

    outcome = ocr_pipeline.submit(db, document, attempt=1)

    assert outcome == RetryScheduled(60, "LowConfidence")
    assert document.status == DocumentStatus.FAILED.value
    assert document.failure_reason == "LowConfidence"


def test_threshold_depends_on_document_type(db, make_enrollment, ocr_pipeline, ocr_provider):
    ocr_provider.confidences = [0.96]
    document = _document(make_enrollment, document_type=DocumentType.PROOF_OF_ADDRESS)

    assert isinstance(ocr_pipeline.submit(db, document), StageSucceeded)
    assert ocr_pipeline.threshold_for("unknown_type") == 0.95


def test_low_confidence_on_last_attempt_fails_stage(db, make_enrollment, ocr_pipeline, ocr_provider):
    ocr_provider.confidences = [0.5]
    document = _document(make_enrollment)

    outcome = ocr_pipeline.submit(db, document, attempt=3)

    assert isinstance(outcome, StageFailed)
    assert outcome.error_type == "LowConfidence"
    assert outcome.subject_id == document.id


def test_unsupported_file_type_and_size_rejected(db, make_enrollment, ocr_pipeline):
    with pytest.raises(InvalidDocument):
        ocr_pipeline.submit(db, _document(make_enrollment, file_type="gif"))
    with pytest.raises(InvalidDocument):
        ocr_pipeline.submit(db, _document(make_enrollment, size_bytes=11 * 1024 * 1024))


def test_already_processed_document_is_a_no_op(db, make_enrollment, ocr_pipeline, ocr_provider):
    document = _document(make_enrollment)
    ocr_pipeline.submit(db, document)

    assert isinstance(ocr_pipeline.submit(db, document), Skipped)
    assert len(ocr_provider.started) == 1


def test_locked_document_reports_already_processing(db, make_enrollment, ocr_pipeline, locks, ocr_provider):
    document = _document(make_enrollment)
    with locks.hold("ocr", document.id):
        outcome = ocr_pipeline.submit(db, document)

    assert outcome == AlreadyProcessing(f"ocr:{document.id}")
    assert ocr_provider.started == []


def test_polling_until_the_job_finishes(db, make_enrollment, ocr_pipeline, ocr_provider):
    ocr_provider.polls_until_done = 3
    document = _document(make_enrollment)

    assert isinstance(ocr_pipeline.submit(db, document), StageSucceeded)
    assert ocr_provider.polls == 3


def test_polling_timeout_is_retryable(db, make_enrollment, ocr_pipeline, ocr_provider, breakers):
    ocr_provider.polls_until_done = 1000
    document = _document(make_enrollment)

    outcome = ocr_pipeline.submit(db, document)

    assert outcome == RetryScheduled(60, "RetryableIntegrationError")
    assert ocr_provider.polls == 30
    assert breakers.get("ocr").failure_count == 1


def test_terminal_provider_error_fails_immediately_and_is_audited(db, make_enrollment, ocr_pipeline, ocr_provider):
    ocr_provider.start_error = TerminalIntegrationError("InvalidS3ObjectException", target="ocr")
    document = _document(make_enrollment)

    outcome = ocr_pipeline.submit(db, document, attempt=1)

    assert isinstance(outcome, StageFailed)
    audit_rows = db.query(AuditLog).filter(AuditLog.action == "integration_failure").all()
    assert len(audit_rows) == 1
    assert audit_rows[0].detail["error_type"] == "TerminalIntegrationError"


def test_open_breaker_defers_without_calling_provider(db, make_enrollment, ocr_pipeline, ocr_provider, breakers):
    for _ in range(5):
        breakers.get("ocr").record_failure()
    document = _document(make_enrollment)

    outcome = ocr_pipeline.submit(db, document)

    assert isinstance(outcome, Deferred)
    assert outcome.delay == pytest.approx(300)
    assert ocr_provider.started == []
    assert document.status == DocumentStatus.PENDING.value


def test_open_breaker_does_not_spend_rate_limit_budget(db, make_enrollment, ocr_pipeline, breakers):
    for _ in range(5):
        breakers.get("ocr").record_failure()

    for _ in range(3):
        assert isinstance(ocr_pipeline.submit(db, _document(make_enrollment)), Deferred)

    assert ocr_pipeline._rate_limiter.in_window == 0


def test_rate_limit_defers(db, make_enrollment, ocr_pipeline, ocr_provider):
    document = _document(make_enrollment)
    for _ in range(100):
        ocr_pipeline._rate_limiter.acquire()

    assert isinstance(ocr_pipeline.submit(db, document), Deferred)
    assert ocr_provider.started == []


# ---------------------------------------------------------------------------
# Textract provider
# ---------------------------------------------------------------------------

def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "StartDocumentAnalysis")


def test_textract_pages_through_results_and_normalizes_confidence():
    client = Mock()
    client.start_document_analysis.return_value = {"JobId": "tx-1"}
    client.get_document_analysis.side_effect = [
        {
            "JobStatus": "SUCCEEDED",
            "Blocks": [
                {"BlockType": "PAGE"},
                {"BlockType": "LINE", "Text": "Ana Lopez", "Confidence": 99.6},
            ],
            "NextToken": "page-2",
        },
        {
            "JobStatus": "SUCCEEDED",
            "Blocks": [{"BlockType": "LINE", "Text": "X1234567", "Confidence": 98.0}],
        },
    ]
    provider = TextractOcrProvider(client=client, bucket="docs")

    assert provider.start("enrollments/1/id.pdf") == "tx-1"
    result = provider.poll("tx-1")

    assert result.status == JobState.SUCCEEDED
    assert [line.confidence for line in result.lines] == [pytest.approx(0.996), pytest.approx(0.98)]
    client.start_document_analysis.assert_called_once_with(
        DocumentLocation={"S3Object": {"Bucket": "docs", "Name": "enrollments/1/id.pdf"}},
        FeatureTypes=["FORMS", "TABLES"],
    )
    client.get_document_analysis.assert_called_with(JobId="tx-1", NextToken="page-2")


def test_textract_in_progress_is_reported():
    client = Mock()
    client.get_document_analysis.return_value = {"JobStatus": "IN_PROGRESS"}
    assert TextractOcrProvider(client=client, bucket="docs").poll("tx-1").finished is False


@pytest.mark.parametrize(
    "code, expected",
    [
        ("ThrottlingException", ThrottlingError),
        ("ProvisionedThroughputExceededException", ThrottlingError),
        ("RequestLimitExceeded", ThrottlingError),
        ("InternalServerError", RetryableIntegrationError),
        ("InvalidS3ObjectException", TerminalIntegrationError),
    ],
)
def test_textract_errors_are_classified(code, expected):
    client = Mock()
    client.start_document_analysis.side_effect = _client_error(code)
    with pytest.raises(expected):
        TextractOcrProvider(client=client, bucket="docs").start("k")


def test_textract_connection_failure_is_retryable():
    client = Mock()
    client.start_document_analysis.side_effect = EndpointConnectionError(endpoint_url="https://textract")
    with pytest.raises(RetryableIntegrationError):
        TextractOcrProvider(client=client, bucket="docs").start("k")
