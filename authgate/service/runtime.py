from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from authgate.config import Settings, get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.email import EmailService
from authgate.service.otp import OtpChannel, OtpService
from authgate.service.password import PasswordService
from authgate.service.rate_limit import (
    FixedWindowRateLimiter,
    LoginRateLimiter,
    OtpRateLimiter,
    RefreshRateLimiter,
)
from authgate.service.refresh import RefreshService
from authgate.service.sessions import SessionRegistry
from authgate.service.sms import SmsService
from authgate.service.tokens import TokenCodec
from authgate.storage.kv import KeyValueStore
from authgate.storage.memory import MemoryKeyValueStore, MemoryStore
from authgate.storage.redis_cache import RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        kv: Optional[KeyValueStore] = None,
        users: Optional[MemoryStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or time.time
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            test_mode=self.settings.test_mode,
        )

        self.users = users or MemoryStore(fs_root=self.settings.shared_fs_root)
        self.kv = kv or self._build_kv()

        self.limiter = FixedWindowRateLimiter(self.kv)
        self.otp_limiter = OtpRateLimiter(self.limiter, self.settings)
        self.refresh_limiter = RefreshRateLimiter(self.limiter, self.settings)
        self.login_limiter = LoginRateLimiter(self.limiter, self.settings)
        self.codec = TokenCodec(self.settings, self.kv, clock=self.clock)
        self.sessions = SessionRegistry(self.settings, self.kv, clock=self.clock)

        dev_delivery = not self.settings.is_production
        self.sms = SmsService(
            api_url=self.settings.sms_api_url,
            api_key=self.settings.sms_api_key,
            template=self.settings.sms_template,
            timeout_seconds=self.settings.sms_timeout_seconds,
            allow_dev_mode=dev_delivery,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            allow_dev_mode=dev_delivery,
        )

        self.otp = OtpService(
            self.settings,
            self.kv,
            self.otp_limiter,
            self.codec,
            {OtpChannel.SMS: self.sms, OtpChannel.EMAIL: self.email},
            clock=self.clock,
        )
        self.refresh = RefreshService(
            self.settings, self.kv, self.codec, self.sessions, self.users
        )
        self.passwords = PasswordService(
            self.settings, self.users, self.otp, self.refresh
        )
        logger.info("runtime_init_completed", kv_type=type(self.kv).__name__)

    def _build_kv(self) -> KeyValueStore:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisKeyValueStore(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for OTP, refresh and session state; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; auth state is "
                "in-process only and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryKeyValueStore(clock=self.clock)

    async def close(self) -> None:
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(new_runtime: Optional[Runtime]) -> None:
    global runtime
    with _runtime_lock:
        runtime = new_runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.kv, RedisKeyValueStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = overrides.pop("settings", None) or get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime


__all__ = ["Runtime", "get_runtime", "set_runtime", "reset_runtime_for_tests"]
