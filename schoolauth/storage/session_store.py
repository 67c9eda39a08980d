from __future__ import annotations

from typing import Optional, Protocol, Set


class SessionStore(Protocol):
    """Key-value store with per-key expiry shared by every request handler.

    Each operation is atomic on its own; there are no cross-key transactions.
    Implementations raise ``StoreUnavailable`` when the backend cannot answer,
    including when an operation exceeds its timeout.
    """

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> bool:
        """Delete ``key`` and report whether it existed.

        Exactly one of several concurrent deleters of the same key sees ``True``.
        """
        ...

    async def index_add(self, key: str, member: str, ttl_seconds: int) -> None:
        """Add ``member`` to the index at ``key`` for ``ttl_seconds``.

        Each member lapses on its own, and lapsed members are dropped on
        every add, so the index never outgrows the bindings it tracks.
        """
        ...

    async def index_members(self, key: str) -> Set[str]:
        """Members of the index at ``key`` that have not lapsed."""
        ...

    async def index_remove(self, key: str, member: str) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
