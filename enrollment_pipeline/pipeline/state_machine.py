"""Enrollment status graph."""

from __future__ import annotations

from enrollment_pipeline.exceptions import InvalidTransition
from enrollment_pipeline.models.enrollment import EnrollmentStatus as S

TRANSITIONS: dict[S, frozenset[S]] = {
    S.DRAFT: frozenset({S.DOCUMENTS_PENDING, S.WITHDRAWN}),
    S.DOCUMENTS_PENDING: frozenset({S.HEALTH_DECLARATION_PENDING, S.FAILED, S.WITHDRAWN}),
    S.HEALTH_DECLARATION_PENDING: frozenset(
        {S.INTERVIEW_SCHEDULED, S.COMPLETED, S.DOCUMENTS_PENDING, S.FAILED, S.WITHDRAWN}
    ),
    S.INTERVIEW_SCHEDULED: frozenset({S.INTERVIEW_COMPLETED, S.DOCUMENTS_PENDING, S.WITHDRAWN}),
    S.INTERVIEW_COMPLETED: frozenset({S.COMPLETED, S.DOCUMENTS_PENDING, S.FAILED, S.WITHDRAWN}),
    S.FAILED: frozenset({S.DOCUMENTS_PENDING}),
    S.COMPLETED: frozenset(),
    S.WITHDRAWN: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.WITHDRAWN})

# Where a stage failure lands once its retries are spent.
RECOVERY_STATUS = S.DOCUMENTS_PENDING


def can_transition(from_status: str, to_status: str) -> bool:
    return S(to_status) in TRANSITIONS[S(from_status)]


def check_transition(from_status: str, to_status: str) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransition(S(from_status).value, S(to_status).value)
