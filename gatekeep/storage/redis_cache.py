from __future__ import annotations

from typing import Mapping, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from gatekeep.logging import get_logger
from gatekeep.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


def _unavailable(op: str, exc: Exception) -> StoreUnavailableError:
    logger.warning("redis_command_failed", op=op, error=str(exc))
    return StoreUnavailableError(f"redis {op} failed: {exc}", backend="cache")


class RedisCache:
    """Async Redis wrapper backing the revocation index, refresh registry and user cache.

    Every command error surfaces as ``StoreUnavailableError`` so callers decide
    between failing closed and falling back.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            raise _unavailable("get", exc) from exc

    async def set(self, key: str, value: str, ttl: int = 0) -> bool:
        try:
            return bool(await self.client.set(key, value, ex=ttl if ttl > 0 else None))
        except RedisError as exc:
            raise _unavailable("set", exc) from exc

    async def set_many(self, mapping: Mapping[str, str], ttl: int = 0) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for key, value in mapping.items():
                    pipe.set(key, value, ex=ttl if ttl > 0 else None)
                await pipe.execute()
        except RedisError as exc:
            raise _unavailable("set_many", exc) from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except RedisError as exc:
            raise _unavailable("exists", exc) from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self.client.delete(*keys))
        except RedisError as exc:
            raise _unavailable("delete", exc) from exc

    async def expire(self, key: str, ttl: int) -> bool:
        try:
            return bool(await self.client.expire(key, ttl))
        except RedisError as exc:
            raise _unavailable("expire", exc) from exc

    async def ttl(self, key: str) -> int:
        try:
            return int(await self.client.ttl(key))
        except RedisError as exc:
            raise _unavailable("ttl", exc) from exc

    async def sadd(self, key: str, *members: str) -> int:
        try:
            return int(await self.client.sadd(key, *members))
        except RedisError as exc:
            raise _unavailable("sadd", exc) from exc

    async def smembers(self, key: str) -> Set[str]:
        try:
            return set(await self.client.smembers(key))
        except RedisError as exc:
            raise _unavailable("smembers", exc) from exc

    async def srem(self, key: str, *members: str) -> int:
        try:
            return int(await self.client.srem(key, *members))
        except RedisError as exc:
            raise _unavailable("srem", exc) from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    when each test runs on its own ``asyncio.run`` loop, but exposes the same
    awaitable surface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[str]:
        try:
            return self._sync_client.get(key)
        except RedisError as exc:
            raise _unavailable("get", exc) from exc

    async def set(self, key: str, value: str, ttl: int = 0) -> bool:
        try:
            return bool(self._sync_client.set(key, value, ex=ttl if ttl > 0 else None))
        except RedisError as exc:
            raise _unavailable("set", exc) from exc

    async def set_many(self, mapping: Mapping[str, str], ttl: int = 0) -> None:
        try:
            pipe = self._sync_client.pipeline(transaction=True)
            for key, value in mapping.items():
                pipe.set(key, value, ex=ttl if ttl > 0 else None)
            pipe.execute()
        except RedisError as exc:
            raise _unavailable("set_many", exc) from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(self._sync_client.exists(key))
        except RedisError as exc:
            raise _unavailable("exists", exc) from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self._sync_client.delete(*keys))
        except RedisError as exc:
            raise _unavailable("delete", exc) from exc

    async def expire(self, key: str, ttl: int) -> bool:
        try:
            return bool(self._sync_client.expire(key, ttl))
        except RedisError as exc:
            raise _unavailable("expire", exc) from exc

    async def ttl(self, key: str) -> int:
        try:
            return int(self._sync_client.ttl(key))
        except RedisError as exc:
            raise _unavailable("ttl", exc) from exc

    async def sadd(self, key: str, *members: str) -> int:
        try:
            return int(self._sync_client.sadd(key, *members))
        except RedisError as exc:
            raise _unavailable("sadd", exc) from exc

    async def smembers(self, key: str) -> Set[str]:
        try:
            return set(self._sync_client.smembers(key))
        except RedisError as exc:
            raise _unavailable("smembers", exc) from exc

    async def srem(self, key: str, *members: str) -> int:
        try:
            return int(self._sync_client.srem(key, *members))
        except RedisError as exc:
            raise _unavailable("srem", exc) from exc

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
