from __future__ import annotations

from typing import Dict, Optional, Protocol, Set


class KeyValueStore(Protocol):
    """Async key-value operations the auth core relies on.

    Every call is atomic on its own. Multi-step flows get their atomicity
    from ``incr``, ``hincrby``, ``getdel`` and ``set(..., ex=...)`` alone.
    """

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def incr(self, key: str) -> int:
        ...

    async def expire(self, key: str, ttl: int) -> bool:
        ...

    async def ttl(self, key: str) -> int:
        """Seconds to live; -1 when the key has no expiry, -2 when missing."""
        ...

    async def getdel(self, key: str) -> Optional[str]:
        ...

    async def hgetall(self, key: str) -> Dict[str, str]:
        ...

    async def hset(self, key: str, mapping: Dict[str, str]) -> int:
        ...

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        ...

    async def sadd(self, key: str, *members: str) -> int:
        ...

    async def srem(self, key: str, *members: str) -> int:
        ...

    async def smembers(self, key: str) -> Set[str]:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


__all__ = ["KeyValueStore"]
