"""Shared fixtures: in-memory database, fixed clock, codec and network fakes."""

from __future__ import annotations

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from enrollment_pipeline.models.database import Base
from enrollment_pipeline.models.enrollment import (
    Document,
    DocumentType,
    Enrollment,
    EnrollmentStatus,
    HealthRecord,
)
from enrollment_pipeline.models.integration import WebhookSubscription
from enrollment_pipeline.pipeline.context import PipelineContext
from enrollment_pipeline.services.cache import TTLCache
from enrollment_pipeline.services.circuit_breaker import BreakerRegistry, MemoryBreakerStore
from enrollment_pipeline.services.encryption import FieldCodec
from enrollment_pipeline.services.fhir import FhirConverter
from enrollment_pipeline.services.locks import MemoryLockStore, ProcessingLocks
from enrollment_pipeline.services.metrics import metrics
from enrollment_pipeline.services.ocr import JobState, OcrLine, OcrPipeline, OcrResult
from enrollment_pipeline.services.rate_limit import SlidingWindowRateLimiter


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FixedClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, headers=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FakeHttpSession:
    """Stands in for requests.Session; replays queued responses or exceptions."""

    def __init__(self, *responses, default=None):
        self.responses = list(responses)
        self.default = default if default is not None else FakeResponse(200, {})
        self.calls: list[dict] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return FakeResponse(item, {})
        return item

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)


class FakeOcrProvider:
    """OCR provider returning canned line confidences after a number of polls."""

    def __init__(self, confidences=(0.995,), polls_until_done: int = 1, start_error=None):
        self.confidences = list(confidences)
        self.polls_until_done = polls_until_done
        self.start_error = start_error
        self.started: list[str] = []
        self.polls = 0

    def start(self, storage_path: str) -> str:
        if self.start_error is not None:
            raise self.start_error
        self.started.append(storage_path)
        return f"job-{len(self.started)}"

    def poll(self, job_id: str) -> OcrResult:
        self.polls += 1
        if self.polls % self.polls_until_done != 0:
            return OcrResult(status=JobState.IN_PROGRESS)
        lines = [OcrLine(text=f"line {i}", confidence=c) for i, c in enumerate(self.confidences)]
        return OcrResult(status=JobState.SUCCEEDED, lines=lines)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def codec():
    return FieldCodec(keys={"k1": Fernet.generate_key().decode()}, active_key_id="k1")


@pytest.fixture
def breakers(clock):
    return BreakerRegistry(MemoryBreakerStore(), failure_threshold=5, cooldown_seconds=300, clock=clock)


@pytest.fixture
def locks(clock):
    return ProcessingLocks(MemoryLockStore(), ttl_seconds=900, clock=clock)


@pytest.fixture
def ocr_provider():
    return FakeOcrProvider()


@pytest.fixture
def emr_http():
    return FakeHttpSession(default=FakeResponse(201, {"id": "emr-1"}))


@pytest.fixture
def webhook_http():
    return FakeHttpSession(default=FakeResponse(200, {}))


@pytest.fixture
def ocr_pipeline(ocr_provider, breakers, codec, locks, clock):
    return OcrPipeline(
        ocr_provider,
        breakers.get("ocr"),
        codec,
        rate_limiter=SlidingWindowRateLimiter("ocr", 100, 60, clock=clock),
        locks=locks,
        poll_interval=0,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def pipeline_context(codec, breakers, locks, ocr_pipeline, emr_http, webhook_http, clock):
    return PipelineContext(
        codec=codec,
        breakers=breakers,
        locks=locks,
        ocr=ocr_pipeline,
        converter=FhirConverter(codec),
        emr_session=emr_http,
        emr_cache=TTLCache(3600, clock=clock),
        webhook_session=webhook_http,
        clock=clock,
        sleep=lambda seconds: None,
    )


# ---------------------------------------------------------------------------
# Domain data
# ---------------------------------------------------------------------------

HEALTH_DATA = {
    "medical_history": [{"code": "38341003", "description": "Hypertension", "onset_date": "2015-04-01"}],
    "chronic_conditions": [],
    "current_medications": [{"code": "197361", "name": "Amlodipine 5 MG", "dosage": "5 mg daily"}],
    "allergies": ["penicillin"],
    "personal": {
        "first_name": "Ana",
        "last_name": "Lopez",
        "id_number": "X1234567",
        "birth_date": "1980-05-17",
        "gender": "female",
        "email": "ana@example.com",
    },
}


@pytest.fixture
def make_enrollment(db, codec):
    """Create an enrollment with one document and, optionally, a verified health record."""

    def factory(
        status=EnrollmentStatus.DRAFT,
        document_type=DocumentType.ID_DOCUMENT,
        file_type="pdf",
        size_bytes=1024,
        with_health_record=True,
        verified=True,
        details=None,
    ) -> Enrollment:
        enrollment = Enrollment(status=EnrollmentStatus(status).value, details=details or {"age": 44})
        db.add(enrollment)
        db.flush()
        db.add(
            Document(
                enrollment_id=enrollment.id,
                document_type=DocumentType(document_type).value,
                storage_path=f"enrollments/{enrollment.id}/id.pdf",
                file_type=file_type,
                size_bytes=size_bytes,
            )
        )
        if with_health_record:
            record = HealthRecord(enrollment_id=enrollment.id, verified=verified)
            record.set_health_data(
                HEALTH_DATA,
                codec,
                sensitive=list(HealthRecord.DEFAULT_SENSITIVE_FIELDS) + ["personal"],
            )
            db.add(record)
        db.commit()
        db.refresh(enrollment)
        return enrollment

    return factory


@pytest.fixture
def make_subscription(db):
    def factory(events=("enrollment.completed",), active=True, url="https://hooks.example.com/enroll"):
        subscription = WebhookSubscription(
            url=url, secret="whsec_test", events=list(events), active=active
        )
        db.add(subscription)
        db.commit()
        return subscription

    return factory
