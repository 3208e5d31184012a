from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a machine-readable
    ``error_code`` that clients switch on:
    - BadRequest (400)
    - Unauthorized / InvalidCredentials (401)
    - Forbidden (403)
    - NotFound (404)
    - Conflict (409)
    - TooManyRequests (429)
    - ServerError (500)
    """

    status_code: int = 400
    error_code: str = "BadRequest"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Request is malformed or the submitted value is wrong (400)."""
    status_code = 400
    error_code = "BadRequest"


class UnauthorizedError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "Unauthorized"


class InvalidCredentialsError(UnauthorizedError):
    error_code = "InvalidCredentials"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "Forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "NotFound"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "Conflict"


class TooManyRequestsError(ServiceError):
    """Rate limit exceeded (429); ``retry_after`` is seconds until the window resets."""
    status_code = 429
    error_code = "TooManyRequests"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message, detail=detail, error_code=error_code)
        self.retry_after = retry_after if retry_after is None else max(int(retry_after), 1)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "ServerError"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "UnauthorizedError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "TooManyRequestsError",
    "ServerError",
]
