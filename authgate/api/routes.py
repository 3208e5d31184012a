from __future__ import annotations

import json
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response
from pydantic import ValidationError

from authgate.api.schemas import (
    LoginBody,
    LoginResponse,
    LogoutAllResponse,
    MeResponse,
    OtpRequestBody,
    OtpRequestResponse,
    OtpVerifyBody,
    OtpVerifyResponse,
    PasswordSetBody,
    PasswordSetResponse,
    RefreshBody,
    SessionListResponse,
    SessionOut,
    ok,
)
from authgate.config import normalize_origin
from authgate.logging import get_logger, mask_ip
from authgate.service.errors import (
    ForbiddenError,
    NotFoundError,
    TooManyRequestsError,
    UnauthorizedError,
)
from authgate.service.runtime import Runtime, get_runtime
from authgate.service.tokens import extract_bearer
from authgate.storage.models import Principal

logger = get_logger(__name__)

REFRESH_COOKIE_NAME = "refresh_token"

router = APIRouter(prefix="/auth", tags=["auth"])


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "success": False,
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def client_ip(request: Request) -> Optional[str]:
    headers = request.headers
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return value
    forwarded = headers.get("x-forwarded-for") or ""
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent") or None


# cookies


def _set_refresh_cookie(response: Response, runtime: Runtime, token: str) -> None:
    settings = runtime.settings
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite=settings.cookie_samesite.value,
        max_age=settings.refresh_token_ttl_seconds,
        path=settings.cookie_refresh_path,
    )


def _clear_refresh_cookie(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        path=settings.cookie_refresh_path,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.cookie_samesite.value,
    )


def _cookie_token(request: Request) -> Optional[str]:
    token = (request.cookies.get(REFRESH_COOKIE_NAME) or "").strip()
    return token or None


# request guards


def _assert_allowed_origin(request: Request, runtime: Runtime) -> None:
    allowed = set(runtime.settings.allowed_origins)
    if not allowed:
        return
    origin = normalize_origin(request.headers.get("origin"))
    referer = normalize_origin(request.headers.get("referer"))
    if (origin and origin in allowed) or (referer and referer in allowed):
        return
    logger.warning("refresh_origin_rejected", origin=origin or None, referer=referer or None)
    raise _http_error("OriginNotAllowed", "Origin is not allowed for refresh.", 403)


def _has_body(request: Request) -> bool:
    length = request.headers.get("content-length")
    if length is not None:
        try:
            return int(length) > 0
        except ValueError:
            return True
    return "transfer-encoding" in request.headers


def _assert_json_or_empty(request: Request) -> None:
    if not _has_body(request):
        return
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" not in content_type:
        raise _http_error("InvalidContentType", "Content-Type must be application/json.", 400)


async def _body_refresh_token(request: Request) -> Optional[str]:
    if not _has_body(request):
        return None
    raw = await request.body()
    if not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise _http_error("BadRequest", "Request body must be valid JSON.", 400)
    if not isinstance(data, dict):
        return None
    try:
        body = RefreshBody.model_validate(data)
    except ValidationError:
        raise _http_error("BadRequest", "Invalid request body.", 400)
    token = (body.refresh_token or "").strip()
    return token or None


# dependencies


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    token = extract_bearer(authorization)
    if not token:
        raise UnauthorizedError("Missing bearer token.")
    payload = get_runtime().codec.verify_access(token)
    return Principal(user_id=payload["sub"], roles=list(payload.get("roles") or []))


def require_role(role: str) -> Callable:
    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_role(role):
            raise ForbiddenError("Insufficient role.", detail={"required_role": role})
        return principal

    return _dependency


# OTP


@router.post("/otp/request")
async def otp_request(body: OtpRequestBody, request: Request, response: Response):
    """Send a one-time code, or report the one still active."""
    runtime = get_runtime()
    result = await runtime.otp.request_code(
        body.channel,
        body.identifier,
        body.purpose,
        ip=client_ip(request),
        user_agent=_user_agent(request),
    )
    if result.already_active:
        response.headers["Retry-After"] = str(max(result.resend_available_in, 1))
    return ok(
        OtpRequestResponse(
            already_active=result.already_active,
            expires_in=result.expires_in,
            resend_available_in=result.resend_available_in,
        )
    )


@router.post("/otp/resend")
async def otp_resend(body: OtpRequestBody, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.otp.resend_code(
        body.channel,
        body.identifier,
        body.purpose,
        ip=client_ip(request),
        user_agent=_user_agent(request),
    )
    if result.already_active:
        response.headers["Retry-After"] = str(max(result.resend_available_in, 1))
    return ok(
        OtpRequestResponse(
            already_active=result.already_active,
            expires_in=result.expires_in,
            resend_available_in=result.resend_available_in,
        )
    )


@router.post("/otp/verify")
async def otp_verify(body: OtpVerifyBody, request: Request):
    """Check a code and exchange it for a single-use ticket."""
    runtime = get_runtime()
    result = await runtime.otp.verify_code(
        body.channel,
        body.identifier,
        body.code,
        body.purpose,
        ip=client_ip(request),
        user_agent=_user_agent(request),
    )
    return ok(
        OtpVerifyResponse(
            ticket=result.ticket, next=result.next, expires_in=result.expires_in
        )
    )


@router.post("/password/set")
async def password_set(body: PasswordSetBody):
    runtime = get_runtime()
    user_id = await runtime.passwords.set_password_with_ticket(body.ticket, body.password)
    return ok(PasswordSetResponse(user_id=user_id))


# login / refresh / logout


@router.post("/login")
async def login(body: LoginBody, request: Request, response: Response):
    """Password login; returns an access token and sets the refresh cookie."""
    runtime = get_runtime()
    ip = client_ip(request)
    await runtime.login_limiter.consume(f"{ip or 'unknown'}|{body.identifier.strip().lower()}")
    result = runtime.passwords.login(body.identifier, body.password)
    session = await runtime.sessions.create(result.user_id, ip=ip, user_agent=_user_agent(request))
    pair = await runtime.refresh.issue_tokens_for_user_id(result.user_id, session.id)
    _set_refresh_cookie(response, runtime, pair.refresh_token)
    return LoginResponse(access_token=pair.access_token).model_dump(by_alias=True)


@router.post("/refresh")
async def refresh(request: Request, response: Response):
    """Rotate the refresh token and mint a new access token."""
    runtime = get_runtime()
    _assert_json_or_empty(request)
    _assert_allowed_origin(request, runtime)

    ip = client_ip(request)
    try:
        await runtime.refresh_limiter.consume(f"{ip or 'unknown'}|{_user_agent(request) or 'unknown'}")
    except TooManyRequestsError:
        logger.warning("refresh_rate_limited", ip=mask_ip(ip))
        raise

    token = _cookie_token(request) or await _body_refresh_token(request)
    if not token:
        raise _http_error("MissingRefresh", "No refresh token provided.", 401)

    try:
        pair = await runtime.refresh.refresh(token)
    except (UnauthorizedError, ForbiddenError, NotFoundError) as exc:
        logger.warning("refresh_denied_response", reason=exc.message)
        raise _http_error("InvalidRefresh", "Invalid or expired refresh token.", 401) from exc

    _set_refresh_cookie(response, runtime, pair.refresh_token)
    return ok({"accessToken": pair.access_token})


@router.post("/logout")
async def logout(request: Request, response: Response):
    """Revoke the presented refresh token; always succeeds."""
    runtime = get_runtime()
    token: Optional[str] = None
    try:
        token = await _body_refresh_token(request)
    except HTTPException:
        token = None
    token = token or _cookie_token(request)
    _clear_refresh_cookie(response, runtime)
    if token:
        await runtime.refresh.revoke(token)
    return ok()


# sessions


@router.get("/me")
async def me(principal: Principal = Depends(get_principal)):
    return ok(MeResponse(user_id=principal.user_id, roles=principal.roles))


@router.get("/sessions")
async def list_sessions(request: Request, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    current_sid: Optional[str] = None
    cookie = _cookie_token(request)
    if cookie:
        payload = await runtime.refresh.peek_payload(cookie, ignore_expiration=True)
        if payload and payload.get("sub") == principal.user_id:
            current_sid = payload.get("sid")
    sessions = await runtime.sessions.list(principal.user_id)
    return ok(
        SessionListResponse(
            sessions=[
                SessionOut.model_validate({**s.to_public(), "current": s.id == current_sid})
                for s in sessions
            ]
        )
    )


@router.post("/sessions/{session_id}/revoke")
async def revoke_session(
    session_id: str = Path(..., min_length=1, max_length=64),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    if not await runtime.refresh.revoke_session(principal.user_id, session_id):
        raise NotFoundError("Session not found.")
    return ok()


@router.post("/logout-all")
async def logout_all(response: Response, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.refresh.revoke_all_sessions(principal.user_id)
    _clear_refresh_cookie(response, runtime)
    return ok(LogoutAllResponse(revoked=revoked))
