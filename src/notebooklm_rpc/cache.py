"""Short-lived in-memory cache for read calls."""

import time
from collections.abc import Callable
from typing import Any

NOTEBOOKS_TTL = 120.0
NOTEBOOK_TTL = 180.0
DEFAULT_TTL = 60.0


def notebooks_key() -> str:
    return "nbs"


def notebook_key(notebook_id: str) -> str:
    return f"nb:{notebook_id}"


class TTLCache:
    """Expiring map. Entries are dropped lazily when read after expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() > expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float = DEFAULT_TTL) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    def invalidate(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``; returns how many."""
        stale = [k for k in self._entries if k.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
