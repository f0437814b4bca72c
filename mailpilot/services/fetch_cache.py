"""Short-lived in-process cache for Gmail list views.

Entries stay readable after they go stale so a throttled caller can still
serve the last good answer.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class _Entry:
    value: Any
    stored_at: float


class TTLCache:
    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def get_fresh(self, key: str) -> Any | None:
        """Return the value if it is younger than the TTL."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at >= self.ttl_seconds:
                return None
            return entry.value

    def get_stale(self, key: str) -> Any | None:
        """Return the value regardless of age."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry else None

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
