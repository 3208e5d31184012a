from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import (
    BadRequestError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
)
from authgate.service.otp import OtpChannel, OtpPurpose, OtpService
from authgate.service.refresh import RefreshService
from authgate.service.users import UserStore

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials."


@dataclass
class LoginResult:
    user_id: str


def normalize_login_identifier(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    if "@" not in value:
        # phone numbers are stored without whitespace
        value = "".join(value.split())
    return value


class PasswordService:
    """Password login and ticket-gated password setup."""

    def __init__(
        self,
        settings: Settings,
        users: UserStore,
        otp: OtpService,
        refresh: RefreshService,
    ) -> None:
        self.settings = settings
        self.users = users
        self.otp = otp
        self.refresh = refresh
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def _burn_verify(self, password: str) -> None:
        """Run one argon2 verification against a throwaway hash."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.users.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._burn_verify(password)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def store_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.users.save_password(user_id, pwd_hash, algo)

    def login(self, identifier: str, password: str) -> LoginResult:
        normalized = normalize_login_identifier(identifier)
        user = self.users.get_user_by_identifier(normalized) if normalized else None
        if not user:
            self._burn_verify(password or "")
            logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if not user.is_active:
            self._burn_verify(password or "")
            logger.info("login_failed", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if not self.verify_password(user.id, password or ""):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user_id=user.id)

    async def set_password_with_ticket(self, ticket: str, password: str) -> str:
        """Redeem an OTP ticket and store a new password; returns the user id."""
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise BadRequestError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
                detail={"field": "password", "min_length": MIN_PASSWORD_LENGTH},
            )

        claims = await self.otp.redeem_ticket(ticket)
        user = self.users.get_user_by_identifier(claims.identifier)

        if claims.purpose == OtpPurpose.SIGNUP:
            if user:
                raise ConflictError("An account with this identifier already exists.")
            user = self.users.create_user(
                claims.identifier,
                email=claims.identifier if claims.channel == OtpChannel.EMAIL else None,
                phone=claims.identifier if claims.channel == OtpChannel.SMS else None,
            )
            logger.info("user_signed_up", user_id=user.id, channel=claims.channel.value)
        elif not user:
            raise NotFoundError("User not found.")

        self.store_password(user.id, password)
        logger.info("password_set", user_id=user.id, purpose=claims.purpose.value)

        if claims.purpose == OtpPurpose.RESET:
            await self.refresh.revoke_all_sessions(user.id)
        return user.id


__all__ = [
    "LoginResult",
    "PasswordService",
    "MIN_PASSWORD_LENGTH",
    "normalize_login_identifier",
]
