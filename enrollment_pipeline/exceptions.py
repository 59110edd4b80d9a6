"""Exception hierarchy for the enrollment integration pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors."""


class ValidationError(PipelineError):
    """Malformed input. Never retried."""


class InvalidDocument(ValidationError):
    """Unsupported document type, file type or size."""


class UnsupportedResourceKind(ValidationError):
    """The requested FHIR resource kind has no mapping."""


class InvalidTransition(ValidationError):
    """An enrollment status change that is not an edge of the state graph."""

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"Illegal status transition {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class PreconditionNotMet(PipelineError):
    """A stage was invoked before its prerequisites were satisfied."""


class NotFound(PipelineError):
    """The referenced entity does not exist."""


class ConfigurationError(PipelineError):
    """Required configuration is missing for the current environment."""


class IntegrationError(PipelineError):
    """Failure talking to an external system."""

    def __init__(self, message: str, *, target: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.target = target
        self.status_code = status_code


class RetryableIntegrationError(IntegrationError):
    """Transient provider or network failure. Consumes a retry."""


class ThrottlingError(RetryableIntegrationError):
    """Provider asked us to slow down."""


class TerminalIntegrationError(IntegrationError):
    """Non-retryable provider rejection."""


class LowConfidence(PipelineError):
    """OCR aggregate confidence fell below the document type threshold."""

    def __init__(self, confidence: float, threshold: float) -> None:
        super().__init__(f"OCR confidence {confidence:.4f} below threshold {threshold:.4f}")
        self.confidence = confidence
        self.threshold = threshold


class CircuitOpen(PipelineError):
    """The target's circuit breaker is open; the call was not attempted."""

    def __init__(self, target: str, retry_after: float) -> None:
        super().__init__(f"Circuit breaker open for '{target}', retry after {retry_after:.0f}s")
        self.target = target
        self.retry_after = retry_after


class RateLimited(PipelineError):
    """Outbound call budget exhausted for the current window."""

    def __init__(self, target: str, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded for '{target}', retry after {retry_after:.0f}s")
        self.target = target
        self.retry_after = retry_after


class SignatureError(PipelineError):
    """Invalid or stale webhook signature on receipt."""


__all__ = [
    "PipelineError",
    "ValidationError",
    "InvalidDocument",
    "UnsupportedResourceKind",
    "InvalidTransition",
    "PreconditionNotMet",
    "NotFound",
    "IntegrationError",
    "RetryableIntegrationError",
    "ThrottlingError",
    "TerminalIntegrationError",
    "LowConfidence",
    "CircuitOpen",
    "RateLimited",
    "SignatureError",
]
