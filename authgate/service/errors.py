from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorKind(str, Enum):
    """Tagged kinds for every authentication failure.

    Values double as the stable wire codes returned to clients, so callers
    branch on ``exc.kind`` and never on message text.
    """

    EXPIRED = "token_expired"
    INVALID = "invalid_token"
    NOT_FOUND_OR_INACTIVE = "session_revoked"
    TOKEN_NOT_FOUND = "token_not_found"
    USER_NOT_FOUND = "user_not_found"
    WEAK_INPUT = "weak_password"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    INVALID_CREDENTIALS = "invalid_credentials"
    UNAUTHENTICATED = "unauthorized"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - validation_error (400)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    headers: Optional[dict] = None

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind: AuthErrorKind = AuthErrorKind.UNAUTHENTICATED


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429); carries the Retry-After delay."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))
        self.headers = {"Retry-After": str(self.retry_after)}


class TokenExpiredError(AuthenticationError):
    """Token lifetime elapsed; the client may refresh."""
    kind = AuthErrorKind.EXPIRED
    error_code = AuthErrorKind.EXPIRED.value


class InvalidTokenError(AuthenticationError):
    """Malformed, tampered, or otherwise unusable token."""
    kind = AuthErrorKind.INVALID
    error_code = AuthErrorKind.INVALID.value


class TokenNotFoundOrInactiveError(AuthenticationError):
    """Refresh token was rotated, revoked, or never issued."""
    kind = AuthErrorKind.NOT_FOUND_OR_INACTIVE
    error_code = AuthErrorKind.NOT_FOUND_OR_INACTIVE.value


class TokenNotFoundError(NotFoundError):
    kind = AuthErrorKind.TOKEN_NOT_FOUND
    error_code = AuthErrorKind.TOKEN_NOT_FOUND.value


class UserNotFoundError(AuthenticationError):
    """Token refers to a user that no longer exists."""
    kind = AuthErrorKind.USER_NOT_FOUND
    error_code = AuthErrorKind.USER_NOT_FOUND.value


class InvalidCredentialsError(AuthenticationError):
    kind = AuthErrorKind.INVALID_CREDENTIALS
    error_code = AuthErrorKind.INVALID_CREDENTIALS.value


class WeakInputError(ValidationError):
    """Password policy violation; ``detail["errors"]`` lists every rule broken."""

    kind = AuthErrorKind.WEAK_INPUT
    error_code = AuthErrorKind.WEAK_INPUT.value

    def __init__(self, message: str, errors: Optional[list[str]] = None) -> None:
        self.errors = list(errors or [message])
        super().__init__(message, detail={"errors": self.errors})


class AccountLockedError(ServiceError):
    """Too many failed logins; retry after ``locked_until`` (423)."""

    status_code = 423
    kind = AuthErrorKind.ACCOUNT_LOCKED
    error_code = AuthErrorKind.ACCOUNT_LOCKED.value


class AccountInactiveError(ForbiddenError):
    kind = AuthErrorKind.ACCOUNT_INACTIVE
    error_code = AuthErrorKind.ACCOUNT_INACTIVE.value


__all__ = [
    "AuthErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "TokenExpiredError",
    "InvalidTokenError",
    "TokenNotFoundOrInactiveError",
    "TokenNotFoundError",
    "UserNotFoundError",
    "InvalidCredentialsError",
    "WeakInputError",
    "AccountLockedError",
    "AccountInactiveError",
]
