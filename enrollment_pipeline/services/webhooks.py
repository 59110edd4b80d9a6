"""
Outbound webhook delivery.

``WebhookDispatcher`` turns an event into one delivery per subscriber and
queues it; ``WebhookDeliverer`` runs a single delivery attempt, appends it
to the attempt ledger and tells the worker whether to retry.

Signatures follow ``t=<unix ts>,v1=<base64 HMAC-SHA256(secret, "<ts>.<payload>")>``
where ``<payload>`` is the exact serialized JSON stored on the delivery,
so receivers verify against the bytes we signed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session

from enrollment_pipeline.config import settings
from enrollment_pipeline.exceptions import (
    CircuitOpen,
    IntegrationError,
    RetryableIntegrationError,
    SignatureError,
    TerminalIntegrationError,
    ValidationError,
)
from enrollment_pipeline.models.integration import (
    DeliveryOutcome,
    JobKind,
    WebhookDeliveryAttempt,
    WebhookSubscription,
)
from enrollment_pipeline.pipeline.events import (
    AlreadyProcessing,
    Deferred,
    JobOutcome,
    RetryScheduled,
    Skipped,
    WebhookDelivered,
    WebhookDeliveryFailed,
)
from enrollment_pipeline.pipeline.queue import JobQueue
from enrollment_pipeline.services.circuit_breaker import BreakerRegistry
from enrollment_pipeline.services.locks import ProcessingLocks, lock_key
from enrollment_pipeline.services.metrics import metrics
from enrollment_pipeline.services.retry import Fail, RetryPolicy, exponential_backoff

logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = (
    "enrollment.created",
    "enrollment.updated",
    "enrollment.completed",
    "enrollment.failed",
    "document.uploaded",
    "document.processed",
    "interview.scheduled",
    "interview.completed",
)

SUCCESS_STATUS_CODES = frozenset({200, 201, 202, 204})
RETRYABLE_STATUS_CODES = frozenset({408, 429})
USER_AGENT = "EnrollmentPipeline-Webhook/1.0"


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------
def serialize_payload(payload: dict[str, Any]) -> str:
    """Canonical JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _digest(secret: str, timestamp: int, payload_json: str) -> str:
    mac = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload_json}".encode("utf-8"),
        hashlib.sha256,
    )
    return base64.b64encode(mac.digest()).decode("ascii")


def sign_payload(secret: str, payload_json: str, timestamp: int) -> str:
    return f"t={timestamp},v1={_digest(secret, timestamp, payload_json)}"


def parse_signature(header: str) -> tuple[int, str]:
    parts = {}
    for item in (header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    if "t" not in parts or "v1" not in parts:
        raise SignatureError("Malformed signature header")
    try:
        timestamp = int(parts["t"])
    except ValueError as exc:
        raise SignatureError("Malformed signature timestamp") from exc
    return timestamp, parts["v1"]


def verify_signature(
    secret: str,
    payload_json: str,
    header: str,
    now: float | None = None,
    tolerance: int | None = None,
) -> None:
    """Raise ``SignatureError`` unless ``header`` signs ``payload_json`` within the tolerance."""
    tolerance = tolerance if tolerance is not None else settings.WEBHOOK_SIGNATURE_TOLERANCE_SECONDS
    now = now if now is not None else time.time()
    timestamp, received = parse_signature(header)
    if abs(now - timestamp) > tolerance:
        raise SignatureError("Signature timestamp outside tolerance")
    expected = _digest(secret, timestamp, payload_json)
    if not hmac.compare_digest(expected, received):
        raise SignatureError("Signature mismatch")


def build_request_body(event_type: str, payload_json: str, signature: str, sent_at: datetime) -> str:
    body = {
        "webhook_event": {
            "event_type": event_type,
            "timestamp": sent_at.isoformat(),
            "payload": json.loads(payload_json),
            "signature": signature,
        }
    }
    return json.dumps(body, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------
class WebhookDispatcher:
    def __init__(self, db: Session, queue: JobQueue | None = None):
        self.db = db
        self.queue = queue or JobQueue(db)

    def dispatch(
        self, subscription_id: uuid.UUID, event_type: str, payload: dict[str, Any]
    ) -> uuid.UUID | None:
        """Queue one delivery to one subscriber. Returns the delivery id, or None if not subscribed."""
        if event_type not in SUPPORTED_EVENTS:
            raise ValidationError(f"Unsupported webhook event '{event_type}'")

        subscription = self.db.get(WebhookSubscription, subscription_id)
        if subscription is None or not subscription.active:
            return None
        if event_type not in (subscription.events or []):
            return None
        if settings.WEBHOOK_REQUIRE_HTTPS and not subscription.url.startswith("https://"):
            raise ValidationError(f"Subscription {subscription.id} URL must use HTTPS")

        delivery_id = uuid.uuid4()
        payload_json = serialize_payload(
            {
                "data": payload,
                "metadata": {
                    "delivery_id": str(delivery_id),
                    "event_type": event_type,
                    "occurred_at": datetime.now(timezone.utc).isoformat(),
                },
            }
        )
        if len(payload_json.encode("utf-8")) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
            raise ValidationError(
                f"Webhook payload exceeds {settings.WEBHOOK_MAX_PAYLOAD_BYTES} bytes"
            )

        self.queue.enqueue(
            JobKind.WEBHOOK_DELIVERY,
            {
                "delivery_id": str(delivery_id),
                "subscription_id": str(subscription.id),
                "event_type": event_type,
                "payload": payload_json,
            },
        )
        logger.info("Queued %s delivery %s to subscription %s", event_type, delivery_id, subscription.id)
        return delivery_id

    def publish(self, event_type: str, payload: dict[str, Any]) -> list[uuid.UUID]:
        """Dispatch to every active subscription listening for ``event_type``."""
        delivery_ids = []
        subscriptions = self.db.scalars(
            select(WebhookSubscription).where(WebhookSubscription.active.is_(True))
        ).all()
        for subscription in subscriptions:
            try:
                delivery_id = self.dispatch(subscription.id, event_type, payload)
            except ValidationError as exc:
                logger.error("Not delivering %s to subscription %s: %s", event_type, subscription.id, exc)
                continue
            if delivery_id is not None:
                delivery_ids.append(delivery_id)
        return delivery_ids


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------
def classify_response(response: requests.Response) -> None:
    status = response.status_code
    if status in SUCCESS_STATUS_CODES:
        return
    message = f"Subscriber responded HTTP {status}"
    if status in RETRYABLE_STATUS_CODES or status >= 500:
        raise RetryableIntegrationError(message, target="webhook", status_code=status)
    raise TerminalIntegrationError(message, target="webhook", status_code=status)


class WebhookDeliverer:
    def __init__(
        self,
        db: Session,
        breakers: BreakerRegistry,
        locks: ProcessingLocks | None = None,
        session: requests.Session | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self._breakers = breakers
        self._locks = locks or ProcessingLocks()
        self._session = session or requests.Session()
        self._retry_policy = retry_policy or exponential_backoff(
            settings.WEBHOOK_MAX_RETRIES, settings.WEBHOOK_BACKOFF_BASE_SECONDS
        )
        self._timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self._clock = clock

    def attempts_for(self, delivery_id: uuid.UUID) -> list[WebhookDeliveryAttempt]:
        return list(
            self.db.scalars(
                select(WebhookDeliveryAttempt)
                .where(WebhookDeliveryAttempt.delivery_id == delivery_id)
                .order_by(WebhookDeliveryAttempt.attempt_number)
            )
        )

    def deliver(self, job_payload: dict[str, Any], attempt: int) -> JobOutcome:
        """Make delivery attempt number ``attempt`` for a queued delivery."""
        delivery_id = uuid.UUID(job_payload["delivery_id"])
        subscription_id = uuid.UUID(job_payload["subscription_id"])
        event_type = job_payload["event_type"]
        payload_json = job_payload["payload"]

        with self._locks.hold("webhook", delivery_id) as acquired:
            if not acquired:
                return AlreadyProcessing(lock_key("webhook", delivery_id))

            for previous in self.attempts_for(delivery_id):
                if previous.outcome in (DeliveryOutcome.SUCCESS.value, DeliveryOutcome.FAILED_TERMINAL.value):
                    return Skipped(f"delivery {delivery_id} already settled")
                if previous.attempt_number != attempt:
                    continue
                if previous.outcome == DeliveryOutcome.FAILED_RETRYABLE.value:
                    # failure recorded but the retry was never queued
                    return RetryScheduled(self._remaining_delay(previous), previous.error or "retry pending")
                return Skipped(f"attempt {attempt} of delivery {delivery_id} already recorded")

            subscription = self.db.get(WebhookSubscription, subscription_id)
            if subscription is None or not subscription.active:
                return Skipped(f"subscription {subscription_id} is no longer active")

            breaker = self._breakers.for_subscription(subscription_id)
            try:
                breaker.before_call()
            except CircuitOpen as exc:
                logger.warning("Delivery %s deferred: %s", delivery_id, exc)
                return Deferred(exc.retry_after, str(exc))

            timestamp = int(self._clock())
            signature = sign_payload(subscription.secret, payload_json, timestamp)
            record = WebhookDeliveryAttempt(
                delivery_id=delivery_id,
                subscription_id=subscription_id,
                event_type=event_type,
                payload=payload_json,
                signature=signature,
                attempt_number=attempt,
                outcome=DeliveryOutcome.PENDING.value,
            )

            try:
                response = self._post(subscription, event_type, payload_json, signature, timestamp)
                record.status_code = response.status_code
                classify_response(response)
            except IntegrationError as exc:
                breaker.record_failure()
                return self._record_failure(record, exc, attempt)

            breaker.record_success()
            record.outcome = DeliveryOutcome.SUCCESS.value
            self.db.add(record)
            self.db.commit()
            metrics.increment("webhook_deliveries_total", outcome="success")
            if response.headers.get("X-RateLimit-Remaining") == "0":
                logger.warning("Subscription %s reports its rate limit is exhausted", subscription_id)
            logger.info("Delivered %s %s on attempt %d", event_type, delivery_id, attempt)
            return WebhookDelivered(delivery_id, subscription_id, attempt)

    def _post(
        self,
        subscription: WebhookSubscription,
        event_type: str,
        payload_json: str,
        signature: str,
        timestamp: int,
    ) -> requests.Response:
        body = build_request_body(
            event_type, payload_json, signature, datetime.fromtimestamp(timestamp, timezone.utc)
        )
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Signature": signature,
            "X-Webhook-Event": event_type,
            "X-Request-ID": f"whk_{uuid.uuid4().hex}",
        }
        try:
            return self._session.post(
                subscription.url, data=body, headers=headers, timeout=self._timeout
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise RetryableIntegrationError(f"Subscriber unreachable: {exc}", target="webhook") from exc
        except requests.RequestException as exc:
            raise TerminalIntegrationError(f"Delivery request failed: {exc}", target="webhook") from exc

    def _remaining_delay(self, record: WebhookDeliveryAttempt) -> float:
        scheduled = record.scheduled_retry_at
        if scheduled is None:
            return record.retry_delay_seconds or 0.0
        if scheduled.tzinfo is None:
            scheduled = scheduled.replace(tzinfo=timezone.utc)
        return max(0.0, scheduled.timestamp() - self._clock())

    def _record_failure(
        self, record: WebhookDeliveryAttempt, error: IntegrationError, attempt: int
    ) -> JobOutcome:
        record.error = str(error)
        action = self._retry_policy(attempt, error)

        if isinstance(action, Fail):
            record.outcome = DeliveryOutcome.FAILED_TERMINAL.value
            self.db.add(record)
            self.db.commit()
            metrics.increment("webhook_deliveries_total", outcome="failed_terminal")
            logger.error(
                "Delivery %s to subscription %s failed for good after %d attempts: %s",
                record.delivery_id,
                record.subscription_id,
                attempt,
                error,
            )
            return WebhookDeliveryFailed(
                record.delivery_id, record.subscription_id, record.event_type, attempt, str(error)
            )

        record.outcome = DeliveryOutcome.FAILED_RETRYABLE.value
        record.retry_delay_seconds = action.delay
        record.scheduled_retry_at = datetime.fromtimestamp(self._clock(), timezone.utc) + timedelta(
            seconds=action.delay
        )
        self.db.add(record)
        self.db.commit()
        metrics.increment("webhook_deliveries_total", outcome="failed_retryable")
        logger.warning(
            "Delivery %s attempt %d failed (%s), retrying in %.0fs",
            record.delivery_id,
            attempt,
            error,
            action.delay,
        )
        return RetryScheduled(action.delay, str(error))
