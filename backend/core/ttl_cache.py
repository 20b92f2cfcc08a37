"""
Expiring key/value cache used for idempotency guards.

Entries expire lazily: an expired entry is dropped the next time it is read.
The cache is process-local, so two workers can each process the same event
once. Callers that need cross-process guarantees must treat the database as
authoritative and use this only to skip redundant work on the hot path.
"""

import time
from typing import Any

DEFAULT_TTL_SECONDS = 120


class TTLCache:
    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: dict[str, tuple[Any, float]] = {}

    def set(self, key: str, value: Any = True) -> None:
        self._store[key] = (value, self._clock() + self.ttl_seconds)

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() > expires_at:
            del self._store[key]
            return None
        return value

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        self._store.clear()

    @property
    def size(self) -> int:
        """Number of stored entries, including expired ones not yet read."""
        return len(self._store)
