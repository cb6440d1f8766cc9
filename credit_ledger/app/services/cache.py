"""
Caching Service.

Small TTL cache for read-mostly data such as the action cost catalog.
Entries may be a few seconds stale; that is acceptable for its callers.
"""

import time
from typing import Any, Callable, Dict, Optional, Tuple


class TTLCache:

    def __init__(self, ttl_seconds: float = 30, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            return None

        expires_at, data = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return None

        return data

    def set(self, key: str, data: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        self._store[key] = (self._clock() + self.ttl_seconds, data)

    def invalidate(self, key: str = None) -> None:
        if key is None:
            self._store.clear()
        else:
            self._store.pop(key, None)
