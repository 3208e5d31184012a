from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from authgate.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class SameSite(str, Enum):
    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

# Secret fields and the file each one is persisted to when generated
_SECRET_FILES = {
    "access_secret": ".access_secret",
    "refresh_secret": ".refresh_secret",
    "ticket_secret": ".ticket_secret",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def normalize_origin(value: Optional[str]) -> str:
    """Reduce a URL or origin string to lowercase ``scheme://host[:port]``."""
    if not value:
        return ""
    raw = value.strip()
    parsed = urlparse(raw)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}".lower()
    return raw.rstrip("/").lower()


class Settings(BaseModel):
    """Runtime settings for the auth service.

    Built once at process start and passed to every component; nothing reads
    the environment after construction.
    """

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authgate", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and runtime resets for tests.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    # Token codec
    access_secret: Optional[str] = env_field(
        None, "AUTH_ACCESS_SECRET", validate_default=True
    )
    refresh_secret: Optional[str] = env_field(
        None, "AUTH_REFRESH_SECRET", validate_default=True
    )
    access_token_ttl_seconds: int = env_field(600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS"
    )
    jwt_issuer: Optional[str] = env_field(None, "JWT_ISSUER")
    jwt_audience: Optional[str] = env_field(None, "JWT_AUDIENCE")
    jwt_clock_tolerance_seconds: int = env_field(5, "JWT_CLOCK_TOLERANCE_SECONDS")

    # One-time ticket issued after OTP verification
    ticket_secret: Optional[str] = env_field(
        None, "SET_PWD_JWT_SECRET", validate_default=True
    )
    ticket_ttl_seconds: int = env_field(600, "SET_PWD_JWT_TTL_SECONDS")
    ticket_issuer: str = env_field("authgate-otp", "TICKET_ISSUER")
    ticket_audience: str = env_field("authgate-core", "TICKET_AUDIENCE")

    session_ttl_seconds: int = env_field(30 * 24 * 3600, "SESSION_TTL_SECONDS")

    # OTP lifecycle
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS")
    otp_resend_cooldown_seconds: int = env_field(120, "OTP_RESEND_COOLDOWN_SECONDS")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_max_resends_per_code: int = env_field(3, "OTP_MAX_RESENDS_PER_CODE")
    otp_block_window_seconds: int = env_field(900, "OTP_BLOCK_WINDOW")

    # Rate limits (fixed windows)
    otp_request_window_seconds: int = env_field(60, "OTP_REQUEST_WINDOW")
    otp_request_max: int = env_field(3, "OTP_REQUEST_MAX")
    otp_request_ip_max: int = env_field(10, "OTP_REQUEST_IP_MAX")
    otp_verify_window_seconds: int = env_field(120, "OTP_VERIFY_WINDOW")
    otp_verify_max: int = env_field(10, "OTP_VERIFY_MAX")
    otp_verify_ip_max: int = env_field(30, "OTP_VERIFY_IP_MAX")
    refresh_rl_window_seconds: int = env_field(10, "REFRESH_RL_WINDOW")
    refresh_rl_max: int = env_field(5, "REFRESH_RL_MAX")
    login_rl_window_seconds: int = env_field(60, "LOGIN_RL_WINDOW")
    login_rl_max: int = env_field(10, "LOGIN_RL_MAX")

    # Refresh cookie
    cookie_samesite: SameSite = env_field(SameSite.LAX, "COOKIE_SAMESITE")
    cookie_secure: Optional[bool] = env_field(
        None,
        "COOKIE_SECURE",
        description="true/false, or auto to enable only in production",
    )
    cookie_refresh_path: str = env_field("/", "COOKIE_REFRESH_PATH")

    # Comma-separated origins allowed for CORS and the refresh origin check
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # SMS provider
    sms_api_url: str = env_field(
        "https://api.kavenegar.com/v1/{api_key}/verify/lookup.json", "SMS_API_URL"
    )
    sms_api_key: Optional[str] = env_field(None, "SMS_API_KEY")
    sms_template: str = env_field("sendSMS", "SMS_TEMPLATE")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS")

    # SMTP
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authgate", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_app_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cookie_samesite", mode="before")
    @classmethod
    def _normalize_samesite(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cookie_secure", mode="before")
    @classmethod
    def _coerce_cookie_secure(cls, value: Any) -> Optional[bool]:
        if value is None or isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in {"", "auto"}:
            return None
        if text in _TRUTHY:
            return True
        if text in _FALSY:
            return False
        raise ValueError("COOKIE_SECURE must be true, false or auto")

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "ticket_ttl_seconds",
        "session_ttl_seconds",
        "otp_ttl_seconds",
        "otp_max_attempts",
        "otp_max_resends_per_code",
        "otp_block_window_seconds",
        "otp_request_window_seconds",
        "otp_request_max",
        "otp_request_ip_max",
        "otp_verify_window_seconds",
        "otp_verify_max",
        "otp_verify_ip_max",
        "refresh_rl_window_seconds",
        "refresh_rl_max",
        "login_rl_window_seconds",
        "login_rl_max",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("otp_resend_cooldown_seconds", "jwt_clock_tolerance_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("access_secret", "refresh_secret", "ticket_secret")
    @classmethod
    def _ensure_secret(cls, value: Optional[str], info: ValidationInfo) -> str:
        if value:
            return value
        if info.data.get("app_env") == AppEnv.PRODUCTION:
            raise ValueError(f"{info.field_name} must be configured in production")
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/authgate")
        secret_path = fs_root / _SECRET_FILES[info.field_name]

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "secret_read_failed",
                    field=info.field_name,
                    error=str(exc),
                    path=str(secret_path),
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=f"{secret_path.name}_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "secret_persist_failed",
                field=info.field_name,
                error=str(exc),
                path=str(secret_path),
            )
            raise RuntimeError(
                f"Unable to persist {info.field_name}; set it explicitly or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("secret_generated", field=info.field_name, path=str(secret_path))
        return generated

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def refresh_cookie_secure(self) -> bool:
        # Browsers reject SameSite=None without Secure
        if self.cookie_samesite == SameSite.NONE:
            return True
        if self.cookie_secure is None:
            return self.is_production
        return self.cookie_secure

    @property
    def allowed_origins(self) -> List[str]:
        origins = [normalize_origin(part) for part in self.frontend_url.split(",")]
        return [origin for origin in origins if origin]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
