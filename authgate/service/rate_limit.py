from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

from authgate.config import Settings
from authgate.logging import get_logger, mask_ip
from authgate.service.errors import TooManyRequestsError
from authgate.storage.kv import KeyValueStore

logger = get_logger(__name__)


@dataclass
class RateLimitState:
    count: int
    ttl: int


def _digest(value: str, length: int) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:length]


class FixedWindowRateLimiter:
    """INCR-based fixed window counter.

    The first hit in a window sets the expiry; a counter found without one
    (lost EXPIRE) gets it re-applied so the key cannot live forever.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def hit(self, key: str, window_seconds: int) -> RateLimitState:
        count = await self.store.incr(key)
        if count == 1:
            await self.store.expire(key, window_seconds)
            return RateLimitState(count=count, ttl=window_seconds)
        ttl = await self.store.ttl(key)
        if ttl < 0:
            await self.store.expire(key, window_seconds)
            ttl = window_seconds
        return RateLimitState(count=count, ttl=ttl)

    async def consume(
        self,
        key: str,
        window_seconds: int,
        max_hits: int,
        *,
        code: str = "TooManyRequests",
        message: str = "Too many requests. Please try again later.",
    ) -> RateLimitState:
        state = await self.hit(key, window_seconds)
        if state.count > max_hits:
            logger.warning(
                "rate_limit_exceeded",
                key=key,
                count=state.count,
                max_hits=max_hits,
                retry_after=state.ttl,
            )
            raise TooManyRequestsError(
                message,
                retry_after=max(state.ttl, 1),
                error_code=code,
            )
        return state


class OtpRateLimiter:
    """Request and verify quotas per identifier and per client IP."""

    def __init__(self, limiter: FixedWindowRateLimiter, settings: Settings) -> None:
        self.limiter = limiter
        self.settings = settings

    @staticmethod
    def bucket_key(
        scope: str,
        subject: str,
        value: str,
        channel: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> str:
        # Raw identifiers and IPs never appear in keys
        parts = ["otp", "rl", scope, subject, _digest(value, 40)]
        if channel:
            parts.append(str(channel))
        if purpose:
            parts.append(str(purpose))
        return ":".join(parts)

    async def _consume(
        self,
        scope: str,
        identifier: str,
        ip: Optional[str],
        channel: Optional[str],
        purpose: Optional[str],
        *,
        window: int,
        max_id: int,
        max_ip: int,
        id_message: str,
        ip_message: str,
    ) -> None:
        await self.limiter.consume(
            self.bucket_key(scope, "id", identifier, channel, purpose),
            window,
            max_id,
            message=id_message,
        )
        if ip:
            try:
                await self.limiter.consume(
                    self.bucket_key(scope, "ip", ip, channel, purpose),
                    window,
                    max_ip,
                    message=ip_message,
                )
            except TooManyRequestsError:
                logger.warning("otp_ip_rate_limited", scope=scope, ip=mask_ip(ip))
                raise

    async def consume_request_bucket(
        self,
        identifier: str,
        ip: Optional[str] = None,
        channel: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> None:
        await self._consume(
            "req",
            identifier,
            ip,
            channel,
            purpose,
            window=self.settings.otp_request_window_seconds,
            max_id=self.settings.otp_request_max,
            max_ip=self.settings.otp_request_ip_max,
            id_message="Too many code requests. Please try again later.",
            ip_message="Too many code requests from this address. Please try again later.",
        )

    async def consume_verify_bucket(
        self,
        identifier: str,
        ip: Optional[str] = None,
        channel: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> None:
        await self._consume(
            "ver",
            identifier,
            ip,
            channel,
            purpose,
            window=self.settings.otp_verify_window_seconds,
            max_id=self.settings.otp_verify_max,
            max_ip=self.settings.otp_verify_ip_max,
            id_message="Too many verification attempts. Please try again later.",
            ip_message="Too many verification attempts from this address. Please try again later.",
        )


class RefreshRateLimiter:
    def __init__(self, limiter: FixedWindowRateLimiter, settings: Settings) -> None:
        self.limiter = limiter
        self.window_seconds = max(1, settings.refresh_rl_window_seconds)
        self.max_hits = max(1, settings.refresh_rl_max)

    @staticmethod
    def bucket_key(subject: str) -> str:
        return f"auth:refresh:rl:{_digest(subject or 'anonymous', 32)}"

    async def consume(self, subject: str) -> RateLimitState:
        """Count one refresh attempt for ``subject`` (typically ``ip|user-agent``)."""
        return await self.limiter.consume(
            self.bucket_key(subject),
            self.window_seconds,
            self.max_hits,
            code="TooManyRefreshRequests",
            message="Too many refresh attempts. Please try again later.",
        )


class LoginRateLimiter:
    """Password attempts per ``ip|identifier``."""

    def __init__(self, limiter: FixedWindowRateLimiter, settings: Settings) -> None:
        self.limiter = limiter
        self.window_seconds = settings.login_rl_window_seconds
        self.max_hits = settings.login_rl_max

    @staticmethod
    def bucket_key(subject: str) -> str:
        return f"auth:login:rl:{_digest(subject or 'anonymous', 32)}"

    async def consume(self, subject: str) -> RateLimitState:
        return await self.limiter.consume(
            self.bucket_key(subject),
            self.window_seconds,
            self.max_hits,
            message="Too many login attempts. Please try again later.",
        )


__all__ = [
    "RateLimitState",
    "FixedWindowRateLimiter",
    "OtpRateLimiter",
    "RefreshRateLimiter",
    "LoginRateLimiter",
]
