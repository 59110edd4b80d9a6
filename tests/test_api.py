"""API tests – FastAPI TestClient against the in-memory database."""

import json
import time
import uuid

import pytest
from fastapi.testclient import TestClient

from enrollment_pipeline.config import settings
from enrollment_pipeline.main import app
from enrollment_pipeline.models.database import get_db
from enrollment_pipeline.models.enrollment import AuditLog, EnrollmentStatus
from enrollment_pipeline.models.integration import DeliveryOutcome, WebhookDeliveryAttempt
from enrollment_pipeline.services.webhooks import sign_payload


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_get_enrollment(client, make_enrollment):
    enrollment = make_enrollment(details={"age": 72})

    body = client.get(f"/api/v1/enrollments/{enrollment.id}").json()

    assert body["status"] == "draft"
    assert body["requires_interview"] is True
    assert body["documents"][0]["status"] == "pending"


def test_unknown_enrollment_is_404(client):
    assert client.get(f"/api/v1/enrollments/{uuid.uuid4()}").status_code == 404


def test_advance_is_accepted(client, make_enrollment):
    enrollment = make_enrollment()

    response = client.post(f"/api/v1/enrollments/{enrollment.id}/advance")

    assert response.status_code == 202
    assert response.json() == {
        "enrollment_id": str(enrollment.id),
        "status": "documents_pending",
        "action": "ocr_enqueued",
    }


def test_advance_when_not_ready_is_409(client, make_enrollment):
    enrollment = make_enrollment(status=EnrollmentStatus.INTERVIEW_SCHEDULED)
    response = client.post(f"/api/v1/enrollments/{enrollment.id}/advance")
    assert response.status_code == 409
    assert "interview" in response.json()["detail"]


def test_interview_completed_signal(client, make_enrollment):
    enrollment = make_enrollment(status=EnrollmentStatus.INTERVIEW_SCHEDULED)

    response = client.post(
        f"/api/v1/enrollments/{enrollment.id}/interview-completed", json={"actor": "dr.smith"}
    )

    assert response.status_code == 200
    assert response.json()["status"] == "interview_completed"
    trail = client.get(f"/api/v1/enrollments/{enrollment.id}/audit").json()
    assert trail[0]["actor"] == "dr.smith"
    assert trail[0]["detail"]["to"] == "interview_completed"


def test_withdrawing_a_completed_enrollment_is_rejected(client, make_enrollment):
    enrollment = make_enrollment(status=EnrollmentStatus.COMPLETED)
    response = client.post(f"/api/v1/enrollments/{enrollment.id}/withdraw", json={"actor": "applicant"})
    assert response.status_code == 422


def test_actor_is_required(client, make_enrollment):
    enrollment = make_enrollment(status=EnrollmentStatus.DOCUMENTS_PENDING)
    response = client.post(f"/api/v1/enrollments/{enrollment.id}/withdraw", json={})
    assert response.status_code == 422


def test_delivery_attempts_ledger(client, db, make_subscription):
    subscription = make_subscription()
    delivery_id = uuid.uuid4()
    for number, outcome, code in ((1, DeliveryOutcome.FAILED_RETRYABLE, 503), (2, DeliveryOutcome.SUCCESS, 200)):
        db.add(
            WebhookDeliveryAttempt(
                delivery_id=delivery_id,
                subscription_id=subscription.id,
                event_type="enrollment.completed",
                payload="{}",
                signature="t=1,v1=x",
                attempt_number=number,
                outcome=outcome.value,
                status_code=code,
            )
        )
    db.commit()

    rows = client.get(f"/api/v1/webhooks/subscriptions/{subscription.id}/attempts").json()

    assert [(r["attempt_number"], r["outcome"], r["status_code"]) for r in rows] == [
        (1, "failed_retryable", 503),
        (2, "success", 200),
    ]


def test_delivery_attempts_for_unknown_subscription(client):
    response = client.get(f"/api/v1/webhooks/subscriptions/{uuid.uuid4()}/attempts")
    assert response.status_code == 404


# ---------------------------------------------------------------------------
# EMR callbacks
# ---------------------------------------------------------------------------

@pytest.fixture
def emr_secret(monkeypatch):
    monkeypatch.setattr(settings, "EMR_WEBHOOK_SECRET", "emr_whsec")
    return "emr_whsec"


def test_signed_emr_callback_is_accepted(client, db, emr_secret):
    body = json.dumps({"event": "resource.created", "resourceType": "Patient", "id": "emr-77"})
    signature = sign_payload(emr_secret, body, int(time.time()))

    response = client.post(
        "/api/v1/webhooks/emr",
        content=body,
        headers={"X-Webhook-Signature": signature, "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "event": "resource.created"}
    row = db.query(AuditLog).filter(AuditLog.action == "emr_callback_received").one()
    assert (row.resource_type, row.resource_id) == ("Patient", "emr-77")


@pytest.mark.parametrize("signature", ["", "t=1,v1=bogus", None])
def test_unsigned_or_forged_callback_is_401(client, db, emr_secret, signature):
    body = json.dumps({"event": "resource.created"})
    if signature is None:
        signature = sign_payload("someone_else", body, int(time.time()))

    response = client.post("/api/v1/webhooks/emr", content=body, headers={"X-Webhook-Signature": signature})

    assert response.status_code == 401
    assert db.query(AuditLog).count() == 0


@pytest.mark.parametrize("body", [b'["x"]', b"42", b'"resource.created"'])
def test_signed_callback_that_is_not_an_object_is_422(client, db, emr_secret, body):
    signature = sign_payload(emr_secret, body.decode(), int(time.time()))

    response = client.post("/api/v1/webhooks/emr", content=body, headers={"X-Webhook-Signature": signature})

    assert response.status_code == 422
    assert db.query(AuditLog).count() == 0


def test_callback_body_that_is_not_utf8_is_422(client, emr_secret):
    response = client.post(
        "/api/v1/webhooks/emr", content=b"\xff\xfe{}", headers={"X-Webhook-Signature": "t=1,v1=x"}
    )
    assert response.status_code == 422


def test_callback_rejected_when_secret_not_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "EMR_WEBHOOK_SECRET", "")
    response = client.post("/api/v1/webhooks/emr", content="{}", headers={"X-Webhook-Signature": "t=1,v1=x"})
    assert response.status_code == 401


def test_metrics_reflect_transitions(client, make_enrollment):
    enrollment = make_enrollment()
    client.post(f"/api/v1/enrollments/{enrollment.id}/advance")

    response = client.get("/api/v1/metrics")

    assert response.headers["content-type"].startswith("text/plain")
    assert 'enrollment_transitions_total{from="draft",to="documents_pending"} 1.0' in response.text
