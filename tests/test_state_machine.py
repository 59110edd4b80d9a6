"""Tests for the enrollment status graph."""

import pytest

from enrollment_pipeline.exceptions import InvalidTransition, ValidationError
from enrollment_pipeline.models.enrollment import EnrollmentStatus as S
from enrollment_pipeline.pipeline.state_machine import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    can_transition,
    check_transition,
)


@pytest.mark.parametrize(
    "from_status, to_status",
    [
        (S.DRAFT, S.DOCUMENTS_PENDING),
        (S.DOCUMENTS_PENDING, S.HEALTH_DECLARATION_PENDING),
        (S.HEALTH_DECLARATION_PENDING, S.INTERVIEW_SCHEDULED),
        (S.HEALTH_DECLARATION_PENDING, S.COMPLETED),
        (S.INTERVIEW_SCHEDULED, S.INTERVIEW_COMPLETED),
        (S.INTERVIEW_COMPLETED, S.COMPLETED),
        (S.HEALTH_DECLARATION_PENDING, S.DOCUMENTS_PENDING),
        (S.FAILED, S.DOCUMENTS_PENDING),
    ],
)
def test_legal_edges(from_status, to_status):
    assert can_transition(from_status, to_status)
    check_transition(from_status.value, to_status.value)


@pytest.mark.parametrize(
    "from_status, to_status",
    [
        (S.DRAFT, S.COMPLETED),
        (S.DOCUMENTS_PENDING, S.COMPLETED),
        (S.DOCUMENTS_PENDING, S.DOCUMENTS_PENDING),
        (S.COMPLETED, S.DOCUMENTS_PENDING),
        (S.WITHDRAWN, S.DRAFT),
        (S.FAILED, S.COMPLETED),
    ],
)
def test_illegal_edges_are_rejected(from_status, to_status):
    with pytest.raises(InvalidTransition) as excinfo:
        check_transition(from_status, to_status)
    assert isinstance(excinfo.value, ValidationError)
    assert excinfo.value.to_status == to_status.value


def test_terminal_statuses_have_no_exits():
    for status in TERMINAL_STATUSES:
        assert TRANSITIONS[status] == frozenset()


def test_every_non_terminal_status_can_be_withdrawn_or_recovered():
    for status, targets in TRANSITIONS.items():
        if status in TERMINAL_STATUSES:
            continue
        assert S.WITHDRAWN in targets or S.DOCUMENTS_PENDING in targets
