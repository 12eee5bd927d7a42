"""
Short-lived in-memory cache of raw lookup responses.

Feeds the non-billing peek path only. Billing decisions always go through
the persisted query records, never through this cache.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from benefit_guard.core.keys import QueryKey


@dataclass
class CacheEntry:
    value: Dict[str, Any]
    expires_at: float


class TransientCache:
    """TTL cache keyed by :class:`QueryKey`, evicting oldest entries first."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[QueryKey, CacheEntry]" = OrderedDict()

    def put(self, key: QueryKey, value: Dict[str, Any]) -> None:
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl_seconds)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def get(self, key: QueryKey) -> Optional[Dict[str, Any]]:
        """Return the cached value, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.value

    def __len__(self) -> int:
        return len(self._entries)
