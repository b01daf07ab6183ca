from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Mapping, Optional, Set, Tuple, Union

_Value = Union[str, Set[str]]


class MemoryCache:
    """Process-local stand-in for Redis used by tests and dev fallback.

    Mirrors the Redis semantics the services rely on: per-key TTLs in seconds
    (``0`` means no expiry), sets as a separate value type, and ``ttl``
    returning ``-2`` for missing keys and ``-1`` for keys without expiry.
    Time comes from ``clock`` so tests can move it forward.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[_Value]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    def _expiry(self, ttl: int) -> Optional[float]:
        return self._clock() + ttl if ttl and ttl > 0 else None

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            if isinstance(value, set):
                raise TypeError(f"{key} holds a set, not a string")
            return value

    async def set(self, key: str, value: str, ttl: int = 0) -> bool:
        with self._lock:
            self._data[key] = (str(value), self._expiry(ttl))
            return True

    async def set_many(self, mapping: Mapping[str, str], ttl: int = 0) -> None:
        with self._lock:
            expires_at = self._expiry(ttl)
            for key, value in mapping.items():
                self._data[key] = (str(value), expires_at)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
        return removed

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            value = self._live(key)
            if value is None:
                return False
            if ttl <= 0:
                self._data.pop(key, None)
                return True
            self._data[key] = (value, self._clock() + ttl)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return -2
            expires_at = self._data[key][1]
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at - self._clock())))

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                current = set()
                self._data[key] = (current, None)
            elif not isinstance(current, set):
                raise TypeError(f"{key} holds a string, not a set")
            before = len(current)
            current.update(str(m) for m in members)
            return len(current) - before

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            current = self._live(key)
            if current is None:
                return set()
            if not isinstance(current, set):
                raise TypeError(f"{key} holds a string, not a set")
            return set(current)

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._live(key)
            if not isinstance(current, set):
                return 0
            before = len(current)
            current.difference_update(str(m) for m in members)
            if not current:
                # Redis drops empty sets
                self._data.pop(key, None)
            return before - len(current)

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
