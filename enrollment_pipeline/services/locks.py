"""
Short-lived processing locks keyed by ``<operation>:<entity id>``.

The lock is the pipeline's only mutual-exclusion primitive. It keeps two
workers off the same document, enrollment or delivery, expires on its own
if a worker dies, and never serializes unrelated entities.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, Protocol

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from enrollment_pipeline.config import settings
from enrollment_pipeline.models.integration import ProcessingLock

logger = logging.getLogger(__name__)


class LockStore(Protocol):
    def acquire(self, key: str, owner: str, ttl_seconds: float, now: float) -> bool:
        ...

    def release(self, key: str, owner: str) -> None:
        ...


class MemoryLockStore:
    def __init__(self) -> None:
        self._locks: dict[str, tuple[str, float]] = {}
        self._guard = threading.Lock()

    def acquire(self, key: str, owner: str, ttl_seconds: float, now: float) -> bool:
        with self._guard:
            held = self._locks.get(key)
            if held is not None and held[1] > now:
                return False
            self._locks[key] = (owner, now + ttl_seconds)
            return True

    def release(self, key: str, owner: str) -> None:
        with self._guard:
            held = self._locks.get(key)
            if held is not None and held[0] == owner:
                del self._locks[key]

    def is_held(self, key: str, now: float) -> bool:
        held = self._locks.get(key)
        return held is not None and held[1] > now


class SqlLockStore:
    """Lock rows in ``processing_locks``; expired rows are taken over with a CAS update."""

    def __init__(self, session_factory: Callable[[], Session] | sessionmaker | None = None) -> None:
        if session_factory is None:
            from enrollment_pipeline.models.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    def acquire(self, key: str, owner: str, ttl_seconds: float, now: float) -> bool:
        with self._session_factory() as db:
            row = db.get(ProcessingLock, key)
            if row is None:
                db.add(ProcessingLock(key=key, owner=owner, expires_at=now + ttl_seconds))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return False
                return True

            if row.expires_at > now:
                return False

            result = db.execute(
                update(ProcessingLock)
                .where(
                    ProcessingLock.key == key,
                    ProcessingLock.owner == row.owner,
                    ProcessingLock.expires_at == row.expires_at,
                )
                .values(owner=owner, expires_at=now + ttl_seconds)
            )
            db.commit()
            return result.rowcount == 1

    def release(self, key: str, owner: str) -> None:
        with self._session_factory() as db:
            db.execute(
                delete(ProcessingLock).where(
                    ProcessingLock.key == key, ProcessingLock.owner == owner
                )
            )
            db.commit()


def lock_key(operation: str, entity_id) -> str:
    return f"{operation}:{entity_id}"


class ProcessingLocks:
    def __init__(
        self,
        store: LockStore | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else MemoryLockStore()
        self._ttl = ttl_seconds or settings.PROCESSING_LOCK_TTL_SECONDS
        self._clock = clock

    @contextmanager
    def hold(self, operation: str, entity_id) -> Iterator[bool]:
        """Yield True if the lock was acquired; it is released on exit."""
        key = lock_key(operation, entity_id)
        owner = uuid.uuid4().hex
        acquired = self.store.acquire(key, owner, self._ttl, self._clock())
        if not acquired:
            logger.info("Processing lock %s is held elsewhere", key)
        try:
            yield acquired
        finally:
            if acquired:
                self.store.release(key, owner)
