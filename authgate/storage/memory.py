from __future__ import annotations

import json
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import User

Clock = Callable[[], float]


class MemoryKeyValueStore:
    """In-process key-value store with Redis-like TTL semantics.

    Used by tests and by local development when Redis is not configured.
    A single RLock makes each primitive atomic; the clock is injectable so
    tests can move time forward without sleeping.
    """

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or time.time
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        self._lock = threading.RLock()

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def _read(self, key: str, kind: type) -> Any:
        self._purge_if_expired(key)
        value = self._data.get(key)
        if value is not None and not isinstance(value, kind):
            raise TypeError(f"WRONGTYPE operation against key {key!r}")
        return value

    def _write(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read(key, str)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        with self._lock:
            self._data[key] = str(value)
            if ex is not None:
                self._expires[key] = self._clock() + max(int(ex), 1)
            else:
                self._expires.pop(key, None)
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                self._purge_if_expired(key)
                if key in self._data:
                    removed += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            return key in self._data

    async def incr(self, key: str) -> int:
        with self._lock:
            current = self._read(key, str)
            try:
                value = int(current or 0) + 1
            except ValueError as exc:
                raise TypeError(f"value at {key!r} is not an integer") from exc
            self._write(key, str(value))
            return value

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            if key not in self._data:
                return False
            self._expires[key] = self._clock() + max(int(ttl), 1)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            self._purge_if_expired(key)
            if key not in self._data:
                return -2
            deadline = self._expires.get(key)
            if deadline is None:
                return -1
            return max(int(round(deadline - self._clock())), 0)

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._read(key, str)
            self._data.pop(key, None)
            self._expires.pop(key, None)
            return value

    async def hgetall(self, key: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._read(key, dict) or {})

    async def hset(self, key: str, mapping: Dict[str, str]) -> int:
        with self._lock:
            current = self._read(key, dict)
            if current is None:
                current = {}
                self._write(key, current)
            added = sum(1 for field in mapping if field not in current)
            current.update({field: str(value) for field, value in mapping.items()})
            return added

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            current = self._read(key, dict)
            if current is None:
                current = {}
                self._write(key, current)
            value = int(current.get(field, 0)) + amount
            current[field] = str(value)
            return value

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._read(key, set)
            if current is None:
                current = set()
                self._write(key, current)
            before = len(current)
            current.update(members)
            return len(current) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._read(key, set)
            if not current:
                return 0
            before = len(current)
            current.difference_update(members)
            if not current:
                self._data.pop(key, None)
                self._expires.pop(key, None)
            return before - len(current)

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._read(key, set) or set())

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def keys(self) -> List[str]:
        with self._lock:
            for key in list(self._data):
                self._purge_if_expired(key)
            return sorted(self._data)


class MemoryStore:
    """User directory and password records, persisted as JSON under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/authgate", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        # RLock allows nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def create_user(
        self,
        identifier: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.identifier == identifier for existing in self.users.values()):
                raise ConstraintViolation(
                    "identifier already exists", {"field": "identifier"}
                )
            user = User(
                id=str(uuid.uuid4()),
                identifier=identifier,
                email=email,
                phone=phone,
                roles=list(roles) if roles else ["user"],
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.identifier == identifier), None
            )

    def set_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(roles)
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "identifier": user.identifier,
            "email": user.email,
            "phone": user.phone,
            "roles": list(user.roles),
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "meta": user.meta or {},
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            identifier=data["identifier"],
            email=data.get("email"),
            phone=data.get("phone"),
            roles=list(data.get("roles") or ["user"]),
            created_at=self._deserialize_datetime(data["created_at"])
            if data.get("created_at")
            else datetime.utcnow(),
            is_active=bool(data.get("is_active", True)),
            meta=data.get("meta") or {},
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist user state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("user_state_corrupt", path=str(path), error=str(exc))
            raise RuntimeError(f"corrupt user state file: {path}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.logger.info("user_state_loaded", users=len(self.users))
        return True


__all__ = ["MemoryKeyValueStore", "MemoryStore"]
