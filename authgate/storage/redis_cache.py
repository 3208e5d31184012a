from __future__ import annotations

from typing import Dict, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError


# GET + DEL in one server-side step for servers without GETDEL (< 6.2)
_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


class RedisKeyValueStore:
    """Redis-backed key-value store for OTP, refresh and session state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the service starts accepting requests."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        if ex is not None:
            ex = max(int(ex), 1)
        return bool(await self.client.set(key, value, ex=ex))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self.client.expire(key, max(int(ttl), 1)))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def getdel(self, key: str) -> Optional[str]:
        try:
            return await self.client.getdel(key)
        except ResponseError as exc:
            if "unknown command" not in str(exc).lower():
                raise
            return await self.client.eval(_GETDEL_SCRIPT, 1, key)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(await self.client.hgetall(key) or {})

    async def hset(self, key: str, mapping: Dict[str, str]) -> int:
        return int(await self.client.hset(key, mapping=mapping))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self.client.hincrby(key, field, amount))

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.client.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.client.srem(key, *members))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key) or set())

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisKeyValueStore"]
