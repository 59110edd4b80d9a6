"""
Circuit breaker shared by every external call (OCR provider, EMR endpoint,
webhook subscribers).

State lives in a pluggable store keyed by target name so that several
worker processes observe the same breaker. The store only offers
``load`` and ``compare_and_set``; every state change is a CAS loop, so no
lock is ever held around a network call.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Protocol, runtime_checkable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from enrollment_pipeline.config import settings
from enrollment_pipeline.exceptions import CircuitOpen
from enrollment_pipeline.models.integration import CircuitBreakerState

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing – reject calls
    HALF_OPEN = "half_open"  # One trial call in flight


@dataclass(frozen=True)
class BreakerRecord:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: float = 0.0
    opened_at: float = 0.0
    trial_started_at: float = 0.0
    version: int = 0


@runtime_checkable
class BreakerStore(Protocol):
    """Storage backend for breaker records.

    ``compare_and_set`` writes ``record`` only if the stored version still
    equals ``expected_version`` (``None`` meaning "no record yet") and
    reports whether the write happened.
    """

    def load(self, key: str) -> BreakerRecord | None:
        ...

    def compare_and_set(
        self, key: str, expected_version: int | None, record: BreakerRecord
    ) -> bool:
        ...


class MemoryBreakerStore:
    """In-process store backed by a dict; the lock only guards the swap itself."""

    def __init__(self) -> None:
        self._records: dict[str, BreakerRecord] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> BreakerRecord | None:
        return self._records.get(key)

    def compare_and_set(
        self, key: str, expected_version: int | None, record: BreakerRecord
    ) -> bool:
        with self._lock:
            current = self._records.get(key)
            current_version = current.version if current is not None else None
            if current_version != expected_version:
                return False
            self._records[key] = record
            return True


class SqlBreakerStore:
    """Database-backed store; each operation runs in its own short transaction."""

    def __init__(self, session_factory: Callable[[], Session] | sessionmaker | None = None) -> None:
        if session_factory is None:
            from enrollment_pipeline.models.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    def load(self, key: str) -> BreakerRecord | None:
        with self._session_factory() as db:
            row = db.get(CircuitBreakerState, key)
            if row is None:
                return None
            return BreakerRecord(
                state=CircuitState(row.state),
                failure_count=row.failure_count,
                last_failure_at=row.last_failure_at,
                opened_at=row.opened_at,
                trial_started_at=row.trial_started_at,
                version=row.version,
            )

    def compare_and_set(
        self, key: str, expected_version: int | None, record: BreakerRecord
    ) -> bool:
        values = {
            "state": record.state.value,
            "failure_count": record.failure_count,
            "last_failure_at": record.last_failure_at,
            "opened_at": record.opened_at,
            "trial_started_at": record.trial_started_at,
            "version": record.version,
        }
        with self._session_factory() as db:
            if expected_version is None:
                db.add(CircuitBreakerState(key=key, **values))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return False
                return True

            result = db.execute(
                update(CircuitBreakerState)
                .where(
                    CircuitBreakerState.key == key,
                    CircuitBreakerState.version == expected_version,
                )
                .values(**values)
            )
            db.commit()
            return result.rowcount == 1


class CircuitBreaker:
    """CLOSED -> OPEN after ``failure_threshold`` consecutive failures,
    OPEN -> HALF_OPEN once ``cooldown_seconds`` have elapsed (exactly one
    trial call admitted), HALF_OPEN -> CLOSED on success or back to OPEN on
    failure.
    """

    def __init__(
        self,
        key: str,
        store: BreakerStore,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key = key
        self._store = store
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._clock = clock

    def _record(self) -> BreakerRecord:
        return self._store.load(self.key) or BreakerRecord()

    @property
    def state(self) -> CircuitState:
        record = self._record()
        if record.state == CircuitState.OPEN and self._clock() - record.opened_at >= self._cooldown:
            return CircuitState.HALF_OPEN
        return record.state

    @property
    def failure_count(self) -> int:
        return self._record().failure_count

    def before_call(self) -> None:
        """Admit the call or raise ``CircuitOpen`` without attempting it."""
        while True:
            current = self._store.load(self.key)
            if current is None or current.state == CircuitState.CLOSED:
                return

            now = self._clock()
            started = current.opened_at if current.state == CircuitState.OPEN else current.trial_started_at
            remaining = self._cooldown - (now - started)
            if remaining > 0:
                raise CircuitOpen(self.key, remaining)

            # Cooldown elapsed (or an earlier trial never reported back): claim the trial.
            trial = replace(
                current,
                state=CircuitState.HALF_OPEN,
                trial_started_at=now,
                version=current.version + 1,
            )
            if self._store.compare_and_set(self.key, current.version, trial):
                logger.info("Circuit breaker '%s' -> HALF_OPEN (trial call admitted)", self.key)
                return

    def record_success(self) -> None:
        while True:
            current = self._store.load(self.key)
            if current is None or (
                current.state == CircuitState.CLOSED and current.failure_count == 0
            ):
                return
            closed = BreakerRecord(version=current.version + 1)
            if self._store.compare_and_set(self.key, current.version, closed):
                if current.state != CircuitState.CLOSED:
                    logger.info("Circuit breaker '%s' -> CLOSED", self.key)
                return

    def record_failure(self) -> int:
        """Count a failure and return the new consecutive failure count."""
        while True:
            current = self._store.load(self.key)
            expected = current.version if current is not None else None
            base = current or BreakerRecord()
            now = self._clock()
            count = base.failure_count + 1

            state, opened_at = base.state, base.opened_at
            if base.state == CircuitState.HALF_OPEN or (
                base.state == CircuitState.CLOSED and count >= self._failure_threshold
            ):
                state, opened_at = CircuitState.OPEN, now

            updated = replace(
                base,
                state=state,
                failure_count=count,
                last_failure_at=now,
                opened_at=opened_at,
                version=base.version + 1,
            )
            if self._store.compare_and_set(self.key, expected, updated):
                if state == CircuitState.OPEN and base.state != CircuitState.OPEN:
                    logger.warning(
                        "Circuit breaker '%s' -> OPEN after %d consecutive failures",
                        self.key,
                        count,
                    )
                return count

    def reset(self) -> None:
        """Manually reset the breaker to CLOSED."""
        self.record_success()


class BreakerRegistry:
    """Hands out breakers keyed by integration target."""

    def __init__(
        self,
        store: BreakerStore | None = None,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else MemoryBreakerStore()
        self._failure_threshold = failure_threshold or settings.BREAKER_FAILURE_THRESHOLD
        self._cooldown = cooldown_seconds or settings.BREAKER_COOLDOWN_SECONDS
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        if key not in self._breakers:
            self._breakers[key] = CircuitBreaker(
                key,
                self.store,
                failure_threshold=self._failure_threshold,
                cooldown_seconds=self._cooldown,
                clock=self._clock,
            )
        return self._breakers[key]

    def for_subscription(self, subscription_id) -> CircuitBreaker:
        return self.get(f"webhook:{subscription_id}")
