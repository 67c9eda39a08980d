from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from schoolauth.logging import get_logger
from schoolauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisSessionStore:
    """Session store backed by Redis.

    Every command is bounded by ``operation_timeout``. A timeout, a
    connection failure or a server error surfaces as ``StoreUnavailable``,
    never as a missing key.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(
        self,
        redis_url: str,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        socket_timeout: float = 5.0,
        client: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self._clock = clock
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is put into service."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "session_store_timeout",
                operation=operation,
                timeout=self.operation_timeout,
            )
            raise StoreUnavailable(operation, "timeout") from exc
        except (RedisError, OSError) as exc:
            logger.warning(
                "session_store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(operation, type(exc).__name__) from exc

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run("set", self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def get(self, key: str) -> Optional[str]:
        value = await self._run("get", self.client.get(key))
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def delete(self, key: str) -> bool:
        removed = await self._run("delete", self.client.delete(key))
        return bool(removed)

    async def index_add(self, key: str, member: str, ttl_seconds: int) -> None:
        """Record ``member`` until ``ttl_seconds`` from now and drop lapsed members."""
        ttl = max(1, int(ttl_seconds))
        now = self._clock()
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(key, "-inf", now)
        pipe.zadd(key, {member: now + ttl})
        pipe.expire(key, ttl)
        await self._run("index_add", pipe.execute())

    async def index_members(self, key: str) -> Set[str]:
        members = await self._run(
            "index_members", self.client.zrangebyscore(key, f"({self._clock()}", "+inf")
        )
        return {m.decode() if isinstance(m, bytes) else m for m in members or ()}

    async def index_remove(self, key: str, member: str) -> None:
        await self._run("index_remove", self.client.zrem(key, member))

    async def ping(self) -> bool:
        return bool(await self._run("ping", self.client.ping()))

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
