from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tenantauth.logging import get_logger
from tenantauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

# INCR and the first-window EXPIRE run as one unit so concurrent first events
# cannot race each other into extending the window.
INCR_WITH_EXPIRE_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return current
"""

COMPARE_AND_DELETE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and current == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""


def _ttl(ttl_seconds: int) -> int:
    """Redis rejects zero or negative expiries."""
    return max(1, int(ttl_seconds))


class RedisKeyedStore:
    """Async Redis wrapper for counters, challenges, codes and revocations."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(self, redis_url: str, *, operation_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )
        self._incr_with_expire = self.client.register_script(INCR_WITH_EXPIRE_SCRIPT)
        self._compare_and_delete = self.client.register_script(COMPARE_AND_DELETE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # A short-lived sync client keeps the async pool off the startup loop
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

    async def _call(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            logger.warning(
                "keyed_store_call_failed",
                op=op,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(f"keyed store {op} failed", {"op": op}) from exc

    async def incr_with_expire(self, key: str, ttl_seconds: int) -> int:
        result = await self._call(
            "incr_with_expire",
            self._incr_with_expire(keys=[key], args=[_ttl(ttl_seconds)]),
        )
        return int(result)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("set", self.client.set(key, value, ex=_ttl(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        result = await self._call(
            "set_if_absent", self.client.set(key, value, ex=_ttl(ttl_seconds), nx=True)
        )
        return bool(result)

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def getdel(self, key: str) -> Optional[str]:
        return await self._call("getdel", self.client.getdel(key))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        result = await self._call(
            "compare_and_delete",
            self._compare_and_delete(keys=[key], args=[expected]),
        )
        return bool(int(result))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self.client.exists(key)))

    async def delete(self, key: str) -> None:
        await self._call("delete", self.client.delete(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisKeyedStore:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited like
    RedisKeyedStore. Timeouts are enforced by the socket settings.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(self, redis_url: str, *, operation_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )
        self._incr_with_expire = self.client.register_script(INCR_WITH_EXPIRE_SCRIPT)
        self._compare_and_delete = self.client.register_script(COMPARE_AND_DELETE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def _call(self, op: str, fn, *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except (RedisError, OSError) as exc:
            logger.warning(
                "keyed_store_call_failed",
                op=op,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(f"keyed store {op} failed", {"op": op}) from exc

    async def incr_with_expire(self, key: str, ttl_seconds: int) -> int:
        return int(
            self._call(
                "incr_with_expire",
                self._incr_with_expire,
                keys=[key],
                args=[_ttl(ttl_seconds)],
            )
        )

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._call("set", self.client.set, key, value, ex=_ttl(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(
            self._call(
                "set_if_absent", self.client.set, key, value, ex=_ttl(ttl_seconds), nx=True
            )
        )

    async def get(self, key: str) -> Optional[str]:
        return self._call("get", self.client.get, key)

    async def getdel(self, key: str) -> Optional[str]:
        return self._call("getdel", self.client.getdel, key)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        result = self._call(
            "compare_and_delete",
            self._compare_and_delete,
            keys=[key],
            args=[expected],
        )
        return bool(int(result))

    async def exists(self, key: str) -> bool:
        return bool(self._call("exists", self.client.exists, key))

    async def delete(self, key: str) -> None:
        self._call("delete", self.client.delete, key)

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
