"""
Explicit retry policies.

A policy is a pure function ``(attempt, error) -> Retry | Fail`` where
``attempt`` is the 1-based number of the attempt that just failed. Stages
receive their policy by injection and act on the decision themselves, so
the schedule can be tested without running a queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union

from enrollment_pipeline.exceptions import (
    CircuitOpen,
    LowConfidence,
    RateLimited,
    RetryableIntegrationError,
)


@dataclass(frozen=True)
class Retry:
    delay: float


@dataclass(frozen=True)
class Fail:
    reason: str


Action = Union[Retry, Fail]
RetryPolicy = Callable[[int, Exception], Action]
Classifier = Callable[[Exception], bool]

# Fast-fail conditions are deferred by the caller, never retried by a policy.
DEFERRED_ERRORS = (CircuitOpen, RateLimited)


def is_transient(error: Exception) -> bool:
    return isinstance(error, RetryableIntegrationError)


def is_transient_or_low_confidence(error: Exception) -> bool:
    return isinstance(error, (RetryableIntegrationError, LowConfidence))


def fixed_backoff(
    max_attempts: int,
    delay: float,
    retryable: Classifier = is_transient,
) -> RetryPolicy:
    """Up to ``max_attempts`` attempts in total, ``delay`` seconds apart."""

    def policy(attempt: int, error: Exception) -> Action:
        if isinstance(error, DEFERRED_ERRORS) or not retryable(error):
            return Fail(f"non-retryable {type(error).__name__}")
        if attempt >= max_attempts:
            return Fail(f"retries exhausted after {attempt} attempts")
        return Retry(delay)

    return policy


def exponential_backoff(
    max_retries: int,
    base_delay: float,
    retryable: Classifier = is_transient,
) -> RetryPolicy:
    """Initial attempt plus ``max_retries`` retries, delays doubling from ``base_delay``.

    With ``max_retries=3`` and ``base_delay=60`` the delays after the first
    three retryable failures are 60, 120 and 240 seconds; the fourth failure
    is terminal.
    """

    def policy(attempt: int, error: Exception) -> Action:
        if isinstance(error, DEFERRED_ERRORS) or not retryable(error):
            return Fail(f"non-retryable {type(error).__name__}")
        if attempt > max_retries:
            return Fail(f"retries exhausted after {attempt} attempts")
        return Retry(base_delay * (2 ** (attempt - 1)))

    return policy
