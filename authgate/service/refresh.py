from __future__ import annotations

import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import UnauthorizedError
from authgate.service.sessions import SessionRegistry
from authgate.service.tokens import TokenCodec
from authgate.service.users import UserStore, hydrate_principal
from authgate.storage.kv import KeyValueStore
from authgate.storage.models import AllowRecord, TokenPair

logger = get_logger(__name__)

ALLOW_PREFIX = "auth:refresh:allow:"

NO_LONGER_VALID_MESSAGE = "Refresh token is no longer valid. Please sign in again."
STATE_MISMATCH_MESSAGE = "Refresh state mismatch."
SESSION_MISMATCH_MESSAGE = "Refresh token session mismatch."


def allow_key(jti: str) -> str:
    return f"{ALLOW_PREFIX}{jti}"


class RefreshService:
    """Issues token pairs and rotates refresh tokens.

    Each refresh jti has exactly one allow-list entry. Rotation removes it
    with GETDEL, so of two concurrent refreshes presenting the same token
    only one can find the entry; the other is rejected as no longer valid.
    Housekeeping after the GETDEL is best-effort and never undoes a rotation.
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        codec: TokenCodec,
        sessions: SessionRegistry,
        users: UserStore,
    ) -> None:
        self.settings = settings
        self.store = store
        self.codec = codec
        self.sessions = sessions
        self.users = users

    @property
    def allow_ttl(self) -> int:
        return max(self.settings.refresh_token_ttl_seconds, 60)

    async def issue_tokens_for_user_id(
        self, user_id: str, session_id: Optional[str] = None
    ) -> TokenPair:
        principal = hydrate_principal(self.users, user_id)
        jti = str(uuid.uuid4())
        access_token = self.codec.sign_access(principal.user_id, principal.roles)
        refresh_token = self.codec.sign_refresh(
            principal.user_id, session_id or jti, jti
        )
        record = AllowRecord(user_id=principal.user_id, session_id=session_id)
        # An unrecorded refresh token could never be used, so this must not be skipped
        await self.store.set(allow_key(jti), record.dumps(), ex=self.allow_ttl)
        if session_id:
            await self.sessions.link_refresh_jti(principal.user_id, session_id, jti)
        logger.debug(
            "refresh_pair_issued",
            user_id=principal.user_id,
            session_id=session_id or jti,
            jti=jti,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            user_id=principal.user_id,
            session_id=session_id or jti,
            jti=jti,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        payload = await self.codec.verify_refresh(refresh_token)
        user_id, jti, sid = payload["sub"], payload["jti"], payload.get("sid")

        stored = await self.store.getdel(allow_key(jti))
        if stored is None:
            logger.warning("refresh_denied", reason="allow_list_miss", jti=jti, user_id=user_id)
            raise UnauthorizedError(NO_LONGER_VALID_MESSAGE)

        record = AllowRecord.loads(stored, subject=user_id, session_id=sid)
        if record is None or record.user_id != user_id:
            logger.warning("refresh_denied", reason="state_mismatch", jti=jti, user_id=user_id)
            raise UnauthorizedError(STATE_MISMATCH_MESSAGE)
        if record.session_id and record.session_id != sid:
            logger.warning(
                "refresh_denied",
                reason="session_mismatch",
                jti=jti,
                user_id=user_id,
                stored_session_id=record.session_id,
                presented_session_id=sid,
            )
            raise UnauthorizedError(SESSION_MISMATCH_MESSAGE)

        session_id = record.session_id
        cleanup: List[Tuple[str, Callable[[], Awaitable[Any]]]] = [
            ("blacklist_old_jti", lambda: self.codec.blacklist_refresh_jti(jti)),
        ]
        if session_id:
            cleanup.append(
                (
                    "unlink_old_jti",
                    lambda: self.sessions.unlink_refresh_jti(user_id, session_id, jti),
                )
            )
            cleanup.append(
                ("touch_session", lambda: self.sessions.touch(user_id, session_id))
            )
        await self._run_best_effort(cleanup, jti=jti, user_id=user_id)

        pair = await self.issue_tokens_for_user_id(user_id, session_id)
        logger.info(
            "refresh_rotated",
            user_id=user_id,
            session_id=pair.session_id,
            old_jti=jti,
            new_jti=pair.jti,
        )
        return pair

    async def revoke(self, refresh_token: str) -> None:
        """Revoke a refresh token and the session it belongs to.

        Invalid tokens are ignored and nothing raises.
        """
        if not refresh_token:
            return
        try:
            payload = await self.codec.verify_refresh(
                refresh_token, ignore_expiration=True, skip_blacklist=True
            )
        except UnauthorizedError:
            return
        user_id, jti, sid = payload["sub"], payload["jti"], payload.get("sid")
        steps: List[Tuple[str, Callable[[], Awaitable[Any]]]] = [
            ("delete_allow_entry", lambda: self.store.delete(allow_key(jti))),
            ("blacklist_jti", lambda: self.codec.blacklist_refresh_jti(jti)),
        ]
        if sid:
            steps.append(
                ("unlink_jti", lambda: self.sessions.unlink_refresh_jti(user_id, sid, jti))
            )
            steps.append(("revoke_session", lambda: self.revoke_session(user_id, sid)))
        await self._run_best_effort(steps, jti=jti, user_id=user_id)
        logger.info("refresh_revoked", user_id=user_id, jti=jti, session_id=sid)

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        """Invalidate every refresh token linked to a session, then drop it."""
        for jti in await self.sessions.linked_jtis(user_id, session_id):
            await self.store.delete(allow_key(jti))
            await self.codec.blacklist_refresh_jti(jti)
        return await self.sessions.revoke(user_id, session_id)

    async def revoke_all_sessions(self, user_id: str) -> int:
        revoked = 0
        for session in await self.sessions.list(user_id):
            if await self.revoke_session(user_id, session.id):
                revoked += 1
        logger.info("sessions_revoked_all", user_id=user_id, revoked=revoked)
        return revoked

    async def peek_payload(
        self, token: str, ignore_expiration: bool = False
    ) -> Optional[Dict[str, Any]]:
        return await self.codec.peek_refresh(
            token, ignore_expiration=ignore_expiration, allow_blacklisted=True
        )

    async def _run_best_effort(
        self,
        steps: List[Tuple[str, Callable[[], Awaitable[Any]]]],
        **context: Any,
    ) -> None:
        for name, step in steps:
            try:
                await step()
            except Exception as exc:
                logger.warning(
                    "refresh_cleanup_failed", step=name, error=str(exc), **context
                )


__all__ = ["RefreshService", "allow_key"]
