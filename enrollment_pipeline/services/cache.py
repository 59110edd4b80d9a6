"""In-memory LRU cache with TTL expiry for EMR read results."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable


def query_fingerprint(resource_kind: str, query: dict[str, Any] | None) -> str:
    """Stable key for a read: resource kind plus a hash of the canonical query."""
    canonical = json.dumps(query or {}, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode()).hexdigest()
    return f"fhir:{resource_kind}:{digest}"


class TTLCache:
    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._store: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None on miss or expiry."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return value

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._store.pop(key, None)
            self._store[key] = (self._clock() + self._ttl, value)
            while len(self._store) > self._max_entries:
                self._store.popitem(last=False)

    def __len__(self) -> int:
        return len(self._store)
