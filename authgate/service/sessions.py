from __future__ import annotations

import hashlib
import time
import uuid
from typing import Callable, List, Optional, Set, Tuple

from authgate.config import Settings
from authgate.logging import get_logger, hash_user_agent, mask_ip
from authgate.storage.kv import KeyValueStore
from authgate.storage.models import Session

logger = get_logger(__name__)


class SessionRegistry:
    """Per-user, per-device sessions and the refresh jtis linked to them.

    Layout:
        session:<userId>:<sessionId>        hash (Session.to_hash)
        session:index:<userId>              set of session ids
        session:jtis:<userId>:<sessionId>   set of linked refresh jtis
        session:jti:index:<jti>             "<userId>:<sessionId>"
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock or time.time

    @property
    def ttl(self) -> int:
        return self.settings.session_ttl_seconds

    @staticmethod
    def session_key(user_id: str, session_id: str) -> str:
        return f"session:{user_id}:{session_id}"

    @staticmethod
    def index_key(user_id: str) -> str:
        return f"session:index:{user_id}"

    @staticmethod
    def jtis_key(user_id: str, session_id: str) -> str:
        return f"session:jtis:{user_id}:{session_id}"

    @staticmethod
    def jti_index_key(jti: str) -> str:
        return f"session:jti:index:{jti}"

    @staticmethod
    def _hash_ip(ip: Optional[str]) -> Optional[str]:
        masked = mask_ip(ip)
        if not masked:
            return None
        return hashlib.sha256(masked.encode()).hexdigest()[:32]

    async def create(
        self,
        user_id: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        now = int(self._clock())
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            last_used_at=now,
            ip_hash=self._hash_ip(ip),
            ua_hash=hash_user_agent(user_agent),
        )
        key = self.session_key(user_id, session.id)
        await self.store.hset(key, session.to_hash())
        await self.store.expire(key, self.ttl)
        await self.store.sadd(self.index_key(user_id), session.id)
        await self.store.expire(self.index_key(user_id), self.ttl)
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    async def get(self, user_id: str, session_id: str) -> Optional[Session]:
        data = await self.store.hgetall(self.session_key(user_id, session_id))
        return Session.from_hash(data)

    async def list(self, user_id: str) -> List[Session]:
        sessions: List[Session] = []
        stale: List[str] = []
        for session_id in await self.store.smembers(self.index_key(user_id)):
            session = await self.get(user_id, session_id)
            if session is None:
                stale.append(session_id)
            else:
                sessions.append(session)
        if stale:
            await self.store.srem(self.index_key(user_id), *stale)
        sessions.sort(key=lambda s: s.last_used_at, reverse=True)
        return sessions

    async def touch(self, user_id: str, session_id: str) -> bool:
        key = self.session_key(user_id, session_id)
        if not await self.store.exists(key):
            return False
        await self.store.hset(key, {"lastUsedAt": str(int(self._clock()))})
        await self.store.expire(key, self.ttl)
        await self.store.expire(self.index_key(user_id), self.ttl)
        await self.store.expire(self.jtis_key(user_id, session_id), self.ttl)
        return True

    async def link_refresh_jti(self, user_id: str, session_id: str, jti: str) -> None:
        jtis_key = self.jtis_key(user_id, session_id)
        await self.store.sadd(jtis_key, jti)
        await self.store.expire(jtis_key, self.ttl)
        await self.store.set(
            self.jti_index_key(jti), f"{user_id}:{session_id}", ex=self.ttl
        )

    async def unlink_refresh_jti(self, user_id: str, session_id: str, jti: str) -> None:
        await self.store.srem(self.jtis_key(user_id, session_id), jti)
        await self.store.delete(self.jti_index_key(jti))

    async def linked_jtis(self, user_id: str, session_id: str) -> Set[str]:
        return await self.store.smembers(self.jtis_key(user_id, session_id))

    async def find_session_by_jti(self, jti: str) -> Optional[Tuple[str, str]]:
        raw = await self.store.get(self.jti_index_key(jti))
        if not raw:
            return None
        user_id, sep, session_id = raw.partition(":")
        if not sep or not user_id or not session_id:
            return None
        return user_id, session_id

    async def revoke(self, user_id: str, session_id: str) -> bool:
        """Drop the session record and its jti links; returns False if unknown."""
        key = self.session_key(user_id, session_id)
        existed = await self.store.exists(key)
        jtis = await self.linked_jtis(user_id, session_id)
        if jtis:
            await self.store.delete(*(self.jti_index_key(jti) for jti in jtis))
        await self.store.delete(key, self.jtis_key(user_id, session_id))
        await self.store.srem(self.index_key(user_id), session_id)
        if existed:
            logger.info("session_revoked", user_id=user_id, session_id=session_id)
        return existed

    async def revoke_all(self, user_id: str) -> int:
        revoked = 0
        for session_id in await self.store.smembers(self.index_key(user_id)):
            if await self.revoke(user_id, session_id):
                revoked += 1
        await self.store.delete(self.index_key(user_id))
        return revoked


__all__ = ["SessionRegistry"]
