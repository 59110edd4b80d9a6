"""Audit logging service for compliance tracking."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from enrollment_pipeline.models.enrollment import AuditLog

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "name",
        "first_name",
        "last_name",
        "birth_date",
        "birthDate",
        "ssn",
        "id_number",
        "identifier",
        "address",
        "telecom",
        "email",
        "phone",
        "medical_history",
        "chronic_conditions",
        "family_history",
        "allergies",
        "current_medications",
        "dosage",
        "note",
        "secret",
        "ciphertext",
        "authorization",
    }
)


def redact(value: Any) -> Any:
    """Recursively replace values under sensitive keys."""
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS or key in SENSITIVE_KEYS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def log_action(
    db: Session,
    *,
    actor: str,
    action: str,
    resource_type: str,
    resource_id: Any,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    """Write an immutable, redacted audit log entry."""
    entry = AuditLog(
        actor=actor,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id),
        detail=redact(detail) if detail else None,
    )
    db.add(entry)
    db.flush()
    logger.info("AUDIT: %s %s %s/%s", actor, action, resource_type, resource_id)
    return entry


def log_integration_failure(
    db: Session,
    *,
    target: str,
    resource_type: str,
    resource_id: Any,
    error: Exception,
    attempt: int | None = None,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    """Record a failed call to an external system on the audit trail."""
    payload = {
        "target": target,
        "error_type": type(error).__name__,
        "error": str(error),
        "attempt": attempt,
    }
    if detail:
        payload.update(detail)
    return log_action(
        db,
        actor="integration_pipeline",
        action="integration_failure",
        resource_type=resource_type,
        resource_id=resource_id,
        detail=payload,
    )
