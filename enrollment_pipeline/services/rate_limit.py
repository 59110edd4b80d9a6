"""
Sliding-window rate limiter for outbound provider calls.

The window lives in a store. ``MemoryRateLimitStore`` suits a single
process and the tests; ``SqlRateLimitStore`` keeps one row per target so
every worker process draws from the same budget.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from enrollment_pipeline.exceptions import RateLimited
from enrollment_pipeline.models.integration import RateLimitWindow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowRecord:
    hits: tuple[float, ...] = field(default_factory=tuple)
    version: int = 0


class RateLimitStore(Protocol):
    def load(self, key: str) -> WindowRecord | None:
        ...

    def compare_and_set(self, key: str, expected_version: int | None, record: WindowRecord) -> bool:
        ...


class MemoryRateLimitStore:
    def __init__(self) -> None:
        self._windows: dict[str, WindowRecord] = {}
        self._guard = threading.Lock()

    def load(self, key: str) -> WindowRecord | None:
        return self._windows.get(key)

    def compare_and_set(self, key: str, expected_version: int | None, record: WindowRecord) -> bool:
        with self._guard:
            current = self._windows.get(key)
            if (current.version if current else None) != expected_version:
                return False
            self._windows[key] = record
            return True


class SqlRateLimitStore:
    """Window rows in ``rate_limit_windows``; each operation is its own short transaction."""

    def __init__(self, session_factory: Callable[[], Session] | sessionmaker | None = None) -> None:
        if session_factory is None:
            from enrollment_pipeline.models.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    def load(self, key: str) -> WindowRecord | None:
        with self._session_factory() as db:
            row = db.get(RateLimitWindow, key)
            if row is None:
                return None
            return WindowRecord(hits=tuple(row.hits or ()), version=row.version)

    def compare_and_set(self, key: str, expected_version: int | None, record: WindowRecord) -> bool:
        with self._session_factory() as db:
            if expected_version is None:
                db.add(RateLimitWindow(key=key, hits=list(record.hits), version=record.version))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return False
                return True

            result = db.execute(
                update(RateLimitWindow)
                .where(RateLimitWindow.key == key, RateLimitWindow.version == expected_version)
                .values(hits=list(record.hits), version=record.version)
            )
            db.commit()
            return result.rowcount == 1


class SlidingWindowRateLimiter:
    """Admits at most ``max_calls`` within any ``window_seconds`` span.

    Independent of the circuit breaker: a healthy provider can still be
    over budget.
    """

    def __init__(
        self,
        target: str,
        max_calls: int,
        window_seconds: float = 60.0,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.target = target
        self._max_calls = max_calls
        self._window = window_seconds
        self._store = store if store is not None else MemoryRateLimitStore()
        self._clock = clock

    def _live(self, record: WindowRecord | None, now: float) -> tuple[float, ...]:
        if record is None:
            return ()
        return tuple(t for t in record.hits if now - t < self._window)

    def acquire(self) -> None:
        """Consume one call from the budget or raise ``RateLimited``."""
        while True:
            now = self._clock()
            current = self._store.load(self.target)
            live = self._live(current, now)
            if len(live) >= self._max_calls:
                retry_after = self._window - (now - min(live))
                raise RateLimited(self.target, retry_after)

            expected = current.version if current is not None else None
            record = WindowRecord(hits=live + (now,), version=(expected or 0) + 1)
            if self._store.compare_and_set(self.target, expected, record):
                return
            logger.debug("Rate limit window '%s' changed underneath us, retrying", self.target)

    @property
    def in_window(self) -> int:
        return len(self._live(self._store.load(self.target), self._clock()))
