from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, List, Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import UnauthorizedError
from authgate.storage.kv import KeyValueStore

logger = get_logger(__name__)

BLACKLIST_PREFIX = "auth:rbl:"


class TokenInvalid(Exception):
    """Internal decode failure carrying a loggable reason."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    value = value.strip()
    return value or None


class TokenCodec:
    """HS256 signing and verification for access, refresh and ticket tokens.

    Each token type has its own secret. The codec is stateless apart from the
    refresh blacklist, which lives in the key-value store.
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

    def _now(self) -> int:
        return int(self._clock())

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, secret: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: Dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(secret, signing_input)}"

    def _decode(
        self,
        token: str,
        secret: str,
        *,
        issuer: Optional[str],
        audience: Optional[str],
        ignore_expiration: bool = False,
    ) -> Dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalid("missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("malformed")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("bad_header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenInvalid("bad_algorithm")

        expected_sig = self._sign(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalid("bad_signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("bad_payload")
        if not isinstance(payload, dict):
            raise TokenInvalid("bad_payload")

        if issuer and payload.get("iss") != issuer:
            raise TokenInvalid("bad_issuer")
        if audience:
            aud = payload.get("aud")
            if isinstance(aud, list):
                valid_aud = audience in aud
            else:
                valid_aud = aud == audience
            if not valid_aud:
                raise TokenInvalid("bad_audience")

        if not ignore_expiration:
            try:
                exp_ts = float(payload.get("exp"))
            except (TypeError, ValueError):
                raise TokenInvalid("missing_exp")
            if exp_ts <= self._clock() - self.settings.jwt_clock_tolerance_seconds:
                raise TokenInvalid("expired")
        return payload

    def _standard_claims(self, ttl_seconds: int) -> Dict[str, Any]:
        now = self._now()
        claims: Dict[str, Any] = {"iat": now, "exp": now + ttl_seconds}
        if self.settings.jwt_issuer:
            claims["iss"] = self.settings.jwt_issuer
        if self.settings.jwt_audience:
            claims["aud"] = self.settings.jwt_audience
        return claims

    # signing

    def sign_access(self, user_id: str, roles: List[str]) -> str:
        payload = {"sub": user_id, "roles": list(roles), "typ": "access"}
        payload.update(self._standard_claims(self.settings.access_token_ttl_seconds))
        return self._encode(payload, self.settings.access_secret)

    def sign_refresh(self, user_id: str, session_id: str, jti: str) -> str:
        payload = {"sub": user_id, "sid": session_id, "jti": jti, "typ": "refresh"}
        payload.update(self._standard_claims(self.settings.refresh_token_ttl_seconds))
        return self._encode(payload, self.settings.refresh_secret)

    def sign_ticket(self, claims: Dict[str, Any], jti: str, subject: str) -> str:
        now = self._now()
        payload = dict(claims)
        payload.update(
            {
                "sub": subject,
                "jti": jti,
                "iss": self.settings.ticket_issuer,
                "aud": self.settings.ticket_audience,
                "iat": now,
                "exp": now + self.settings.ticket_ttl_seconds,
            }
        )
        return self._encode(payload, self.settings.ticket_secret)

    # verification

    def verify_access(self, token: str) -> Dict[str, Any]:
        try:
            payload = self._decode(
                token,
                self.settings.access_secret,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
            )
            if payload.get("typ") != "access":
                raise TokenInvalid("wrong_type")
            if not isinstance(payload.get("sub"), str) or not payload["sub"]:
                raise TokenInvalid("missing_sub")
            roles = payload.get("roles")
            if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
                raise TokenInvalid("bad_roles")
        except TokenInvalid as exc:
            logger.info("access_token_rejected", reason=exc.reason)
            raise UnauthorizedError("Invalid or expired access token.") from exc
        return payload

    def _decode_refresh(self, token: str, *, ignore_expiration: bool) -> Dict[str, Any]:
        payload = self._decode(
            token,
            self.settings.refresh_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ignore_expiration=ignore_expiration,
        )
        if payload.get("typ") != "refresh":
            raise TokenInvalid("wrong_type")
        for claim in ("sub", "sid", "jti"):
            if not isinstance(payload.get(claim), str) or not payload[claim]:
                raise TokenInvalid(f"missing_{claim}")
        return payload

    async def verify_refresh(
        self,
        token: str,
        *,
        ignore_expiration: bool = False,
        skip_blacklist: bool = False,
    ) -> Dict[str, Any]:
        try:
            payload = self._decode_refresh(token, ignore_expiration=ignore_expiration)
        except TokenInvalid as exc:
            logger.info("refresh_token_rejected", reason=exc.reason)
            raise UnauthorizedError("Invalid or expired refresh token.") from exc
        if not skip_blacklist and await self.is_refresh_blacklisted(payload["jti"]):
            logger.warning("refresh_token_blacklisted", jti=payload["jti"], sub=payload["sub"])
            raise UnauthorizedError("Refresh token has been revoked.")
        return payload

    def verify_ticket(self, token: str) -> Dict[str, Any]:
        try:
            payload = self._decode(
                token,
                self.settings.ticket_secret,
                issuer=self.settings.ticket_issuer,
                audience=self.settings.ticket_audience,
            )
            if not isinstance(payload.get("jti"), str) or not payload["jti"]:
                raise TokenInvalid("missing_jti")
        except TokenInvalid as exc:
            logger.info("ticket_rejected", reason=exc.reason)
            raise UnauthorizedError("Invalid or expired ticket.") from exc
        return payload

    async def peek_refresh(
        self,
        token: str,
        *,
        ignore_expiration: bool = False,
        allow_blacklisted: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """Return the verified refresh payload, or None for anything invalid."""
        try:
            payload = self._decode_refresh(token, ignore_expiration=ignore_expiration)
        except TokenInvalid:
            return None
        if not allow_blacklisted and await self.is_refresh_blacklisted(payload["jti"]):
            return None
        return payload

    # blacklist

    async def blacklist_refresh_jti(self, jti: str, ttl: Optional[int] = None) -> None:
        ttl_seconds = ttl or self.settings.refresh_token_ttl_seconds
        await self.store.set(f"{BLACKLIST_PREFIX}{jti}", "1", ex=max(int(ttl_seconds), 1))

    async def is_refresh_blacklisted(self, jti: str) -> bool:
        return await self.store.exists(f"{BLACKLIST_PREFIX}{jti}")


__all__ = ["TokenCodec", "TokenInvalid", "extract_bearer"]
