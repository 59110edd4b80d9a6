"""
EMR transmission client.

Creates and reads FHIR resources on the external medical-record system.
Every call goes through the shared ``emr`` circuit breaker; every failed
attempt counts against it, including ones a later retry recovers from, so
the breaker reflects the real health of the endpoint.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

import requests

from enrollment_pipeline.config import settings
from enrollment_pipeline.exceptions import (
    IntegrationError,
    RetryableIntegrationError,
    TerminalIntegrationError,
    ValidationError,
)
from enrollment_pipeline.schemas.fhir import FHIR_VERSION
from enrollment_pipeline.services.cache import TTLCache, query_fingerprint
from enrollment_pipeline.services.circuit_breaker import CircuitBreaker
from enrollment_pipeline.services.fhir import FhirConverter
from enrollment_pipeline.services.retry import Fail, RetryPolicy, fixed_backoff

logger = logging.getLogger(__name__)

TARGET = "emr"
FHIR_CONTENT_TYPE = "application/fhir+json"
RETRYABLE_STATUS_CODES = frozenset({408, 429})

FailureHook = Callable[[IntegrationError, int], None]


def classify_response(response: requests.Response, expected_status: int) -> None:
    """Raise the matching integration error unless ``expected_status`` came back."""
    status = response.status_code
    if status == expected_status:
        return
    message = f"EMR responded HTTP {status}"
    if status in RETRYABLE_STATUS_CODES or status >= 500:
        raise RetryableIntegrationError(message, target=TARGET, status_code=status)
    raise TerminalIntegrationError(message, target=TARGET, status_code=status)


def _json_body(response: requests.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


class EmrClient:
    def __init__(
        self,
        converter: FhirConverter,
        breaker: CircuitBreaker,
        base_url: str | None = None,
        api_token: str | None = None,
        session: requests.Session | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        cache: TTLCache | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_failure: FailureHook | None = None,
    ):
        self._converter = converter
        self._breaker = breaker
        self._base_url = (base_url or settings.EMR_BASE_URL).rstrip("/")
        self._api_token = api_token if api_token is not None else settings.EMR_API_TOKEN
        self._session = session or requests.Session()
        self._timeout = timeout or settings.EMR_TIMEOUT_SECONDS
        self._retry_policy = retry_policy or fixed_backoff(
            settings.EMR_MAX_ATTEMPTS, settings.EMR_RETRY_BACKOFF_SECONDS
        )
        self._cache = cache or TTLCache(settings.EMR_CACHE_TTL_SECONDS)
        self._sleep = sleep
        self.on_failure = on_failure

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": FHIR_CONTENT_TYPE,
            "Content-Type": FHIR_CONTENT_TYPE,
            "X-FHIR-Version": FHIR_VERSION,
            "Authorization": f"Bearer {self._api_token}",
            "X-Request-ID": f"fhir_{uuid.uuid4().hex}",
        }

    def _url(self, resource_kind: str) -> str:
        return f"{self._base_url}/fhir/{resource_kind}"

    def _request(self, method: str, resource_kind: str, **kwargs) -> requests.Response:
        try:
            return self._session.request(
                method,
                self._url(resource_kind),
                headers=self._headers(),
                timeout=self._timeout,
                **kwargs,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise RetryableIntegrationError(f"EMR unreachable: {exc}", target=TARGET) from exc
        except requests.RequestException as exc:
            raise TerminalIntegrationError(f"EMR request failed: {exc}", target=TARGET) from exc

    def send(self, resource: dict[str, Any], resource_kind: str) -> dict[str, Any]:
        """Create ``resource`` on the EMR. Only HTTP 201 counts as success."""
        if not self._converter.validate(resource, resource_kind):
            raise ValidationError(f"Refusing to transmit invalid FHIR {resource_kind}")

        attempt = 0
        while True:
            attempt += 1
            self._breaker.before_call()
            try:
                response = self._request("POST", resource_kind, json=resource)
                classify_response(response, expected_status=201)
            except IntegrationError as exc:
                self._breaker.record_failure()
                logger.warning(
                    "FHIR %s transmission attempt %d failed: %s", resource_kind, attempt, exc
                )
                if self.on_failure is not None:
                    self.on_failure(exc, attempt)
                action = self._retry_policy(attempt, exc)
                if isinstance(action, Fail):
                    raise
                self._sleep(action.delay)
                continue

            self._breaker.record_success()
            body = _json_body(response)
            logger.info(
                "FHIR %s %s transmitted on attempt %d", resource_kind, resource.get("id"), attempt
            )
            return body

    def fetch(self, resource_kind: str, query: dict[str, Any] | None = None) -> dict[str, Any]:
        """Read resources, decrypting sensitive fields. Served from cache within the TTL."""
        key = query_fingerprint(resource_kind, query)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        self._breaker.before_call()
        try:
            response = self._request("GET", resource_kind, params=query or {})
            classify_response(response, expected_status=200)
        except IntegrationError as exc:
            self._breaker.record_failure()
            logger.warning("FHIR %s retrieval failed: %s", resource_kind, exc)
            if self.on_failure is not None:
                self.on_failure(exc, 1)
            raise
        self._breaker.record_success()

        data = self._decrypt_payload(_json_body(response), resource_kind)
        self._cache.put(key, data)
        return data

    def _decrypt_payload(self, data: dict[str, Any], resource_kind: str) -> dict[str, Any]:
        if data.get("resourceType") == resource_kind:
            return self._converter.decrypt(data, resource_kind)
        if data.get("resourceType") == "Bundle":
            entries = []
            for entry in data.get("entry") or []:
                resource = entry.get("resource") or {}
                if resource.get("resourceType") == resource_kind:
                    entry = {**entry, "resource": self._converter.decrypt(resource, resource_kind)}
                entries.append(entry)
            return {**data, "entry": entries}
        return data
