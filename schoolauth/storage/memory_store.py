from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Set, Tuple

from schoolauth.logging import get_logger


class MemorySessionStore:
    """In-process session store with per-key expiry for development and tests.

    Expired entries are purged lazily on access. A single lock guards all
    state so each operation is atomic even when called from several threads.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        # Index members map to their own expiry
        self._sets: Dict[str, Tuple[Dict[str, float], float]] = {}
        self._lock = threading.RLock()

    def _expires_at(self, ttl_seconds: int) -> float:
        return self._clock() + max(1, int(ttl_seconds))

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _live_set(self, key: str) -> Optional[Dict[str, float]]:
        entry = self._sets.get(key)
        if entry is None:
            return None
        members, expires_at = entry
        if expires_at <= self._clock():
            self._sets.pop(key, None)
            return None
        return members

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._expires_at(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._live_value(key) is not None or self._live_set(key) is not None
            self._values.pop(key, None)
            self._sets.pop(key, None)
            return existed

    async def index_add(self, key: str, member: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            members = {m: exp for m, exp in (self._live_set(key) or {}).items() if exp > now}
            members[member] = self._expires_at(ttl_seconds)
            self._sets[key] = (members, max(members.values()))

    async def index_members(self, key: str) -> Set[str]:
        with self._lock:
            now = self._clock()
            return {m for m, exp in (self._live_set(key) or {}).items() if exp > now}

    async def index_remove(self, key: str, member: str) -> None:
        with self._lock:
            members = self._live_set(key)
            if members is None:
                return
            members.pop(member, None)
            if not members:
                self._sets.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for _, exp in self._values.values() if exp > now)
