from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass
class User:
    id: str
    identifier: str
    email: Optional[str] = None
    phone: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: ["user"])
    created_at: datetime = field(default_factory=datetime.utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class Principal:
    """Authenticated user identity as seen by the token core."""

    user_id: str
    roles: List[str] = field(default_factory=list)

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class Session:
    id: str
    user_id: str
    created_at: int
    last_used_at: int
    ip_hash: Optional[str] = None
    ua_hash: Optional[str] = None

    def to_hash(self) -> Dict[str, str]:
        mapping = {
            "id": self.id,
            "userId": self.user_id,
            "createdAt": str(self.created_at),
            "lastUsedAt": str(self.last_used_at),
        }
        if self.ip_hash:
            mapping["ipHash"] = self.ip_hash
        if self.ua_hash:
            mapping["uaHash"] = self.ua_hash
        return mapping

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> Optional["Session"]:
        if not data or not data.get("id") or not data.get("userId"):
            return None
        try:
            created_at = int(data.get("createdAt") or 0)
            last_used_at = int(data.get("lastUsedAt") or created_at)
        except (TypeError, ValueError):
            return None
        return cls(
            id=data["id"],
            user_id=data["userId"],
            created_at=created_at,
            last_used_at=last_used_at,
            ip_hash=data.get("ipHash") or None,
            ua_hash=data.get("uaHash") or None,
        )

    def to_public(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "lastUsedAt": self.last_used_at,
        }


@dataclass
class AllowRecord:
    """Value stored at ``auth:refresh:allow:<jti>``."""

    user_id: str
    session_id: Optional[str] = None

    def dumps(self) -> str:
        return json.dumps({"userId": self.user_id, "sessionId": self.session_id})

    @classmethod
    def loads(
        cls, raw: str, *, subject: str, session_id: Optional[str]
    ) -> Optional["AllowRecord"]:
        """Parse a stored entry; returns None when it is malformed.

        The legacy value ``"1"`` predates session linkage and is read as
        belonging to the presented token's subject and session.
        """
        if raw == "1":
            return cls(user_id=subject, session_id=session_id)
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(data, dict):
            return None
        user_id = data.get("userId")
        if not isinstance(user_id, str) or not user_id:
            return None
        stored_session = data.get("sessionId")
        if stored_session is not None and not isinstance(stored_session, str):
            return None
        return cls(user_id=user_id, session_id=stored_session or None)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    user_id: str
    session_id: str
    jti: str
