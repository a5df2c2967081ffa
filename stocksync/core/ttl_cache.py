"""
Small in-memory TTL cache shared by the reserved-stock inference and the
feedback-loop suppressor.

Expired entries are evicted when read and by `sweep()`, which the scheduler
calls periodically. Writes refresh the expiry (sliding TTL).
"""

import time
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic, name: str = "cache"):
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: Dict[K, Tuple[float, V]] = {}

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: K, value: V, ttl: Optional[float] = None) -> None:
        self._entries[key] = (self._clock() + (ttl if ttl is not None else self.ttl), value)

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: K) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
