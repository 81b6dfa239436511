"""Bounded, expiring hints about which backend holds a file."""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from hybrid_storage.lib.storage.base import BackendKind, FileReference


@dataclass
class LocationCacheEntry:
    backend: BackendKind
    cached_at: float


class LocationCache:
    """Map of file reference to the backend that last served it.

    Entries expire ``ttl`` seconds after they were recorded. When the map
    grows past ``capacity`` the oldest-inserted entry is dropped; reads do
    not refresh an entry's position and neither does overwriting it.

    The cache is only ever a hint for search order, never proof that a
    file exists.
    """

    def __init__(
        self,
        ttl: float = 300.0,
        capacity: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.capacity = capacity
        self._clock = clock
        self._entries: OrderedDict[FileReference, LocationCacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ref: FileReference) -> bool:
        return ref in self._entries

    def record(self, ref: FileReference, backend: BackendKind) -> None:
        self._entries[ref] = LocationCacheEntry(backend=backend, cached_at=self._clock())
        if len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def lookup(self, ref: FileReference) -> BackendKind | None:
        entry = self._entries.get(ref)
        if entry is None:
            return None
        if self._clock() - entry.cached_at > self.ttl:
            del self._entries[ref]
            return None
        return entry.backend

    def invalidate(self, ref: FileReference) -> bool:
        return self._entries.pop(ref, None) is not None

    def clear(self) -> int:
        """Drop every entry and return how many there were."""
        size = len(self._entries)
        self._entries.clear()
        return size

    def stats(self) -> dict:
        now = self._clock()
        return {
            "size": len(self._entries),
            "max_size": self.capacity,
            "ttl": self.ttl,
            "entries": [
                {
                    "key": str(ref),
                    "backend": entry.backend.value,
                    "age": now - entry.cached_at,
                }
                for ref, entry in self._entries.items()
            ],
        }
