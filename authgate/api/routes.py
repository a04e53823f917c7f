from __future__ import annotations

import asyncio
import hashlib
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from authgate.api.error_handling import error_response
from authgate.api.schemas import (
    AuditLogListResponse,
    AuditLogResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from authgate.logging import get_logger
from authgate.service.audit import AuditAction
from authgate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    ServiceError,
    TokenNotFoundError,
)
from authgate.service.middleware import ACCESS_COOKIE_NAME, Identity, role_allows
from authgate.service.runtime import check_rate_limit, get_runtime
from authgate.service.sessions import TokenPair
from authgate.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE_NAME = "refresh_token"
DEVICE_FINGERPRINT_HEADER = "X-Device-Fingerprint"
_MAX_FINGERPRINT_LENGTH = 256


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Raise 429 when the bucket for ``key`` is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(runtime, key, limit, window_seconds)
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", key_prefix=key.split(":", 1)[0], reset_seconds=reset_seconds)
        raise RateLimitedError("rate limit exceeded", retry_after=reset_seconds)
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device_fingerprint(request: Request) -> str:
    """Client-supplied fingerprint, else a stable hash of user agent and IP."""
    supplied = request.headers.get(DEVICE_FINGERPRINT_HEADER)
    if supplied:
        return supplied.strip()[:_MAX_FINGERPRINT_LENGTH]
    user_agent = request.headers.get("user-agent", "")
    raw = f"{user_agent}:{_client_ip(request) or ''}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def _apply_token_cookies(response: Response, tokens: TokenPair) -> None:
    secure = get_runtime().settings.cookie_secure
    # Access cookie stays script-readable so the browser client can attach it
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        tokens.access_token,
        httponly=False,
        secure=secure,
        samesite="lax",
        max_age=tokens.expires_in,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=tokens.refresh_expires_in,
        path="/",
    )


def _clear_token_cookies(response: Response) -> None:
    secure = get_runtime().settings.cookie_secure
    response.delete_cookie(ACCESS_COOKIE_NAME, path="/", secure=secure, samesite="lax")
    response.delete_cookie(
        REFRESH_COOKIE_NAME, path="/", secure=secure, httponly=True, samesite="lax"
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        handle=user.handle,
        role=user.role,
        status=user.status,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        refresh_expires_in=tokens.refresh_expires_in,
    )


async def get_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> Identity:
    runtime = get_runtime()
    outcome = runtime.authenticator.authenticate(authorization, request.cookies)
    if not outcome.ok:
        raise outcome.to_error()
    return outcome.identity


async def get_optional_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[Identity]:
    runtime = get_runtime()
    return runtime.authenticator.authenticate(authorization, request.cookies).identity


async def get_admin_user(identity: Identity = Depends(get_user)) -> Identity:
    if not role_allows(identity.role, "admin"):
        raise ForbiddenError("admin access required")
    return identity


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in.

    Raises:
        400: password fails the strength policy (every violation listed)
        403: signup disabled
        409: email already registered
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        handle=body.handle,
        device_fingerprint=_device_fingerprint(request),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_token_cookies(response, result.tokens)
    return Envelope(
        status="ok",
        data=AuthResponse(user=_user_response(result.user), **_token_response(result.tokens).model_dump()),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for a token pair.

    Unknown email and wrong password produce the same 401. Five consecutive
    failures lock the account (423) for the lockout window.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        device_fingerprint=_device_fingerprint(request),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_token_cookies(response, result.tokens)
    return Envelope(
        status="ok",
        data=AuthResponse(user=_user_response(result.user), **_token_response(result.tokens).model_dump()),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    """Rotate a refresh token into a new pair.

    The presented token is single-use. Any failure clears both cookies and
    tells the client to sign in again.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
    )
    response.headers["Cache-Control"] = "no-store"
    presented = request.cookies.get(REFRESH_COOKIE_NAME) or (body.refresh_token if body else None)
    try:
        if not presented:
            raise AuthenticationError("Refresh token required")
        tokens = await runtime.sessions.refresh_tokens(
            presented,
            device_fingerprint=_device_fingerprint(request),
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except ServiceError as exc:
        status_code = 401 if isinstance(exc, AuthenticationError) else exc.status_code
        logger.info("token_refresh_failed", error_code=exc.error_code)
        failure = error_response(
            status_code,
            exc.message,
            {"requires_login": True},
            code=exc.error_code,
            headers={"Cache-Control": "no-store"},
        )
        _clear_token_cookies(failure)
        return failure
    _apply_token_cookies(response, tokens)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    identity: Optional[Identity] = Depends(get_optional_user),
):
    """Revoke the presented refresh token. Cookies are cleared either way."""
    runtime = get_runtime()
    presented = request.cookies.get(REFRESH_COOKIE_NAME) or (body.refresh_token if body else None)
    user_id = identity.user_id if identity else None
    revoked = 0
    if body is not None and body.all_devices and identity:
        revoked = await runtime.sessions.revoke_all_refresh_tokens(identity.user_id, reason="logout")
    elif presented:
        try:
            await runtime.sessions.revoke_refresh_token(
                presented,
                user_id,
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
            revoked = 1
        except TokenNotFoundError:
            logger.info("logout_token_not_found", user_id=user_id)
    if identity:
        runtime.audit.record(
            AuditAction.LOGOUT,
            actor_id=identity.user_id,
            target_resource="user",
            target_id=identity.user_id,
            metadata={"revoked": revoked},
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    _clear_token_cookies(response)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    identity: Identity = Depends(get_user),
):
    """Change the caller's password and sign out every device."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password_change:{identity.user_id}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    revoked = await runtime.auth.change_password(
        identity.user_id,
        body.current_password,
        body.new_password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    await asyncio.to_thread(runtime.email.send_password_changed, identity.email)
    _clear_token_cookies(response)
    return Envelope(status="ok", data={"status": "changed", "revoked_sessions": revoked})


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    token = await runtime.auth.request_password_reset(
        body.email,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if token:
        # SMTP is blocking; keep it off the event loop
        await asyncio.to_thread(runtime.email.send_password_reset, body.email, token)
    data = {
        "status": "sent",
        "message": "If an account exists for this email, a reset link has been sent",
    }
    if runtime.settings.test_mode and token:
        data["reset_token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    # Keyed per client to slow token guessing
    await _enforce_rate_limit(runtime, f"reset:confirm:{_client_ip(request)}", limit=5, window_seconds=300)
    await runtime.auth.reset_password(
        body.token,
        body.new_password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data={"status": "reset"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(identity: Identity = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(identity.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=_user_response(user))


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def list_audit_logs(
    actor_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    limit: int = Query(100, ge=1, le=500),
    identity: Identity = Depends(get_admin_user),
):
    runtime = get_runtime()
    entries = runtime.audit.recent(
        actor_id=actor_id, action=action.value if action else None, limit=limit
    )
    items = [
        AuditLogResponse(
            id=e.id,
            action=e.action,
            actor_id=e.actor_id,
            target_resource=e.target_resource,
            target_id=e.target_id,
            metadata=e.metadata or {},
            ip_address=e.ip_address,
            user_agent=e.user_agent,
            success=e.success,
            error_message=e.error_message,
            created_at=e.created_at,
        )
        for e in entries
    ]
    return Envelope(status="ok", data=AuditLogListResponse(items=items))
