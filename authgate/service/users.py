from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from authgate.service.errors import UnauthorizedError
from authgate.storage.models import Principal, User


class UserStore(Protocol):
    """User directory operations the auth core needs."""

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        ...

    def create_user(
        self,
        identifier: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        ...


def hydrate_principal(store: UserStore, user_id: str) -> Principal:
    """Load an active user's roles; missing or inactive users are unauthorized."""
    user = store.get_user(user_id)
    if not user or not user.is_active:
        raise UnauthorizedError("User is not active.")
    # dedupe while keeping order
    roles = list(dict.fromkeys(role for role in user.roles if role))
    return Principal(user_id=user.id, roles=roles)


__all__ = ["UserStore", "hydrate_principal"]
