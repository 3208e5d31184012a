from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from authgate.service.otp import OtpChannel, OtpPurpose

MAX_IDENTIFIER_LENGTH = 254
MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset({
    "BadRequest",
    "Unauthorized",
    "InvalidCredentials",
    "Forbidden",
    "NotFound",
    "Conflict",
    "TooManyRequests",
    "TooManyRefreshRequests",
    "MissingRefresh",
    "InvalidRefresh",
    "OriginNotAllowed",
    "InvalidContentType",
    "DeliveryFailed",
    "ServerError",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ApiModel(BaseModel):
    """Base for request/response bodies: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        serialize_by_alias=True,
    )


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(ApiModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: Optional[str] = None


def ok(data: Any = None) -> dict:
    """Serialize a success envelope; ``data`` may be an ApiModel or plain dict."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    return Envelope(success=True, data=data).model_dump(by_alias=True, exclude_none=True)


_EMAIL_PATTERN = re.compile(r"^[^@\s]{1,64}@[^@\s]+\.[^@\s]+$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{6,15}$")


class OtpRequestBody(ApiModel):
    channel: OtpChannel
    identifier: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    purpose: OtpPurpose = OtpPurpose.LOGIN

    @field_validator("identifier")
    @classmethod
    def _clean_identifier(cls, value: str) -> str:
        return _normalize_unicode(value).strip()

    @model_validator(mode="after")
    def _check_identifier_format(self):
        if self.channel == OtpChannel.EMAIL:
            if not _EMAIL_PATTERN.match(self.identifier):
                raise ValueError("identifier must be a valid email address")
        elif not _PHONE_PATTERN.match("".join(self.identifier.split())):
            raise ValueError("identifier must be a valid phone number")
        return self


class OtpVerifyBody(OtpRequestBody):
    code: str = Field(..., min_length=1, max_length=12)


class PasswordSetBody(ApiModel):
    ticket: str = Field(..., min_length=1, max_length=4096)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class LoginBody(ApiModel):
    identifier: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("identifier")
    @classmethod
    def _clean_identifier(cls, value: str) -> str:
        return _normalize_unicode(value)


class RefreshBody(ApiModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class OtpRequestResponse(ApiModel):
    already_active: bool
    expires_in: int
    resend_available_in: int


class OtpVerifyResponse(ApiModel):
    ticket: str
    next: str
    expires_in: int


class PasswordSetResponse(ApiModel):
    user_id: str


class LoginResponse(ApiModel):
    access_token: str


class MeResponse(ApiModel):
    user_id: str
    roles: List[str]


class SessionOut(ApiModel):
    id: str
    created_at: int
    last_used_at: int
    current: bool = False


class SessionListResponse(ApiModel):
    sessions: List[SessionOut]


class LogoutAllResponse(ApiModel):
    revoked: int
