from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol

from authgate.config import Settings
from authgate.logging import get_logger, hash_user_agent, mask_ip
from authgate.service.errors import (
    BadRequestError,
    ForbiddenError,
    TooManyRequestsError,
    UnauthorizedError,
)
from authgate.service.rate_limit import OtpRateLimiter
from authgate.service.tokens import TokenCodec
from authgate.storage.kv import KeyValueStore

logger = get_logger(__name__)

INVALID_CODE_MESSAGE = "Invalid or expired code."
BLOCKED_MESSAGE = "Too many attempts. Try again later."
INVALID_TICKET_MESSAGE = "Invalid or expired ticket."

_WHITESPACE = re.compile(r"\s+")


class OtpChannel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class OtpPurpose(str, Enum):
    SIGNUP = "signup"
    LOGIN = "login"
    RESET = "reset"


class OtpSender(Protocol):
    async def send_otp(self, identifier: str, code: str) -> None:
        ...


@dataclass
class OtpRequestResult:
    already_active: bool
    expires_in: int
    resend_available_in: int


@dataclass
class OtpVerifyResult:
    ticket: str
    next: str
    expires_in: int


@dataclass
class TicketClaims:
    jti: str
    purpose: OtpPurpose
    channel: OtpChannel
    identifier: str


def normalize_identifier(channel: OtpChannel, raw: Optional[str]) -> str:
    value = (raw or "").strip()
    if channel == OtpChannel.SMS:
        value = _WHITESPACE.sub("", value)
    elif channel == OtpChannel.EMAIL:
        value = value.lower()
    return value


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def _generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


class OtpService:
    """One-time code lifecycle per ``(channel, identifier, purpose)``.

    State lives in a hash at ``otp:<digest>`` plus a cooldown marker
    (``:cd``) and a block marker (``:blk``). A successful verification
    deletes the record and mints a single-use ticket for the next step.
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        rate_limiter: OtpRateLimiter,
        codec: TokenCodec,
        senders: Dict[OtpChannel, OtpSender],
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.rate_limiter = rate_limiter
        self.codec = codec
        self.senders = senders
        self._clock = clock or time.time

    def _now(self) -> int:
        return int(self._clock())

    # keys

    @staticmethod
    def record_key(purpose: OtpPurpose, channel: OtpChannel, identifier: str) -> str:
        digest = _sha256_hex(f"{purpose.value}|{channel.value}|{identifier}")[:40]
        return f"otp:{digest}"

    @staticmethod
    def ticket_key(jti: str) -> str:
        return f"otp:ticket:{jti}"

    # request / resend

    async def request_code(
        self,
        channel: OtpChannel,
        identifier: str,
        purpose: OtpPurpose = OtpPurpose.LOGIN,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OtpRequestResult:
        return await self._request(
            channel, identifier, purpose, ip, user_agent, resend=False
        )

    async def resend_code(
        self,
        channel: OtpChannel,
        identifier: str,
        purpose: OtpPurpose = OtpPurpose.LOGIN,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OtpRequestResult:
        return await self._request(
            channel, identifier, purpose, ip, user_agent, resend=True
        )

    async def _request(
        self,
        channel: OtpChannel,
        raw_identifier: str,
        purpose: OtpPurpose,
        ip: Optional[str],
        user_agent: Optional[str],
        *,
        resend: bool,
    ) -> OtpRequestResult:
        channel = OtpChannel(channel)
        purpose = OtpPurpose(purpose)
        identifier = normalize_identifier(channel, raw_identifier)
        if not identifier:
            raise BadRequestError("Identifier is required.")

        await self.rate_limiter.consume_request_bucket(
            identifier, ip, channel.value, purpose.value
        )

        key = self.record_key(purpose, channel, identifier)
        if await self.store.exists(f"{key}:blk"):
            raise ForbiddenError(BLOCKED_MESSAGE)

        now = self._now()
        record = await self.store.hgetall(key)
        send_count = 1
        if record:
            resend_at = int(record.get("resendAt") or 0)
            exp = int(record.get("exp") or 0)
            resend_remaining = max(0, resend_at - now)
            expires_in = max(0, exp - now)
            if resend_remaining > 0:
                return OtpRequestResult(
                    already_active=True,
                    expires_in=expires_in,
                    resend_available_in=resend_remaining,
                )
            if expires_in > 0:
                previous = int(record.get("sendCount") or 1)
                if previous >= self.settings.otp_max_resends_per_code:
                    logger.warning(
                        "otp_resend_cap_reached",
                        channel=channel.value,
                        purpose=purpose.value,
                        send_count=previous,
                    )
                    raise TooManyRequestsError(
                        "Too many code resends. Please try again later.",
                        retry_after=expires_in,
                    )
                send_count = previous + 1

        await self._issue_new_code(channel, identifier, purpose, ip, key, now, send_count)

        logger.info(
            "otp_request",
            channel=channel.value,
            purpose=purpose.value,
            resend=resend,
            send_count=send_count,
            ip=mask_ip(ip),
            ua_hash=hash_user_agent(user_agent),
        )
        return OtpRequestResult(
            already_active=False,
            expires_in=self.settings.otp_ttl_seconds,
            resend_available_in=self.settings.otp_resend_cooldown_seconds,
        )

    async def _issue_new_code(
        self,
        channel: OtpChannel,
        identifier: str,
        purpose: OtpPurpose,
        ip: Optional[str],
        key: str,
        now: int,
        send_count: int,
    ) -> None:
        code = _generate_code()
        # Replace rather than merge so no field from the previous code survives
        await self.store.delete(key)
        await self.store.hset(
            key,
            {
                "codeHash": _sha256_hex(code),
                "attempts": "0",
                "maxAttempts": str(self.settings.otp_max_attempts),
                "exp": str(now + self.settings.otp_ttl_seconds),
                "resendAt": str(now + self.settings.otp_resend_cooldown_seconds),
                "sendCount": str(send_count),
                "ip": mask_ip(ip) or "",
                "ch": channel.value,
                "pu": purpose.value,
            },
        )
        await self.store.expire(key, self.settings.otp_ttl_seconds)
        if self.settings.otp_resend_cooldown_seconds > 0:
            await self.store.set(
                f"{key}:cd", "1", ex=self.settings.otp_resend_cooldown_seconds
            )
        await self.senders[channel].send_otp(identifier, code)

    # verify

    async def verify_code(
        self,
        channel: OtpChannel,
        identifier: str,
        code: str,
        purpose: OtpPurpose = OtpPurpose.LOGIN,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OtpVerifyResult:
        channel = OtpChannel(channel)
        purpose = OtpPurpose(purpose)
        identifier = normalize_identifier(channel, identifier)

        await self.rate_limiter.consume_verify_bucket(
            identifier, ip, channel.value, purpose.value
        )

        key = self.record_key(purpose, channel, identifier)
        block_key = f"{key}:blk"
        if await self.store.exists(block_key):
            raise ForbiddenError(BLOCKED_MESSAGE)

        record = await self.store.hgetall(key)
        if not record:
            raise BadRequestError(INVALID_CODE_MESSAGE)

        now = self._now()
        if int(record.get("exp") or 0) <= now:
            await self.store.delete(key)
            raise BadRequestError(INVALID_CODE_MESSAGE)

        attempts = await self.store.hincrby(key, "attempts", 1)
        max_attempts = int(record.get("maxAttempts") or self.settings.otp_max_attempts)
        if attempts > max_attempts:
            await self.store.delete(key, f"{key}:cd")
            await self.store.set(
                block_key, "1", ex=self.settings.otp_block_window_seconds
            )
            logger.warning(
                "otp_blocked",
                channel=channel.value,
                purpose=purpose.value,
                attempts=attempts,
                ip=mask_ip(ip),
            )
            raise ForbiddenError(BLOCKED_MESSAGE)

        submitted = _sha256_hex((code or "").strip())
        if not hmac.compare_digest(submitted, record.get("codeHash", "")):
            raise BadRequestError(INVALID_CODE_MESSAGE)

        await self.store.delete(key, f"{key}:cd")

        jti = str(uuid.uuid4())
        ticket = self.codec.sign_ticket(
            {
                "purpose": purpose.value,
                "channel": channel.value,
                "identifier": identifier,
            },
            jti,
            identifier,
        )
        await self.store.set(
            self.ticket_key(jti),
            _sha256_hex(ticket),
            ex=self.settings.ticket_ttl_seconds,
        )

        logger.info(
            "otp_verify_success",
            channel=channel.value,
            purpose=purpose.value,
            ip=mask_ip(ip),
            ua_hash=hash_user_agent(user_agent),
        )
        return OtpVerifyResult(
            ticket=ticket,
            next="reset-password" if purpose == OtpPurpose.RESET else "set-password",
            expires_in=self.settings.ticket_ttl_seconds,
        )

    async def redeem_ticket(self, ticket: str) -> TicketClaims:
        """Verify and consume a ticket; a ticket redeems at most once."""
        payload = self.codec.verify_ticket(ticket)
        stored = await self.store.getdel(self.ticket_key(payload["jti"]))
        if stored is None or not hmac.compare_digest(stored, _sha256_hex(ticket)):
            logger.warning("ticket_redeem_rejected", jti=payload["jti"])
            raise UnauthorizedError(INVALID_TICKET_MESSAGE)
        try:
            return TicketClaims(
                jti=payload["jti"],
                purpose=OtpPurpose(payload.get("purpose")),
                channel=OtpChannel(payload.get("channel")),
                identifier=str(payload.get("identifier") or payload.get("sub") or ""),
            )
        except ValueError as exc:
            raise UnauthorizedError(INVALID_TICKET_MESSAGE) from exc


__all__ = [
    "OtpChannel",
    "OtpPurpose",
    "OtpSender",
    "OtpRequestResult",
    "OtpVerifyResult",
    "TicketClaims",
    "OtpService",
    "normalize_identifier",
]
