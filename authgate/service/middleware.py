"""Per-request authentication gate.

``RequestAuthenticator.authenticate`` is a pure function of the request's
authorization header and cookies: it returns an ``AuthOutcome`` holding
either the caller's identity or the kind of rejection. The web layer turns
rejections into responses; nothing here raises for an unauthenticated
caller.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional, Protocol

from authgate.logging import get_logger
from authgate.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    AuthenticationError,
    AuthErrorKind,
    InvalidTokenError,
    ServiceError,
    TokenExpiredError,
    UserNotFoundError,
)
from authgate.service.tokens import TokenCodec, TokenErrorKind
from authgate.storage.common import utcnow
from authgate.storage.models import ResourceMembership, User

logger = get_logger(__name__)

ACCESS_COOKIE_NAME = "access_token"

# Membership roles in ascending order of privilege
MEMBERSHIP_ROLES = ("viewer", "member", "admin", "owner")

_REJECTION_ERRORS: dict[AuthErrorKind, tuple[type[ServiceError], str]] = {
    AuthErrorKind.UNAUTHENTICATED: (AuthenticationError, "Authentication required"),
    AuthErrorKind.EXPIRED: (TokenExpiredError, "Token expired"),
    AuthErrorKind.INVALID: (InvalidTokenError, "Invalid token"),
    AuthErrorKind.USER_NOT_FOUND: (UserNotFoundError, "User not found"),
    AuthErrorKind.ACCOUNT_INACTIVE: (AccountInactiveError, "Account is not active"),
    AuthErrorKind.ACCOUNT_LOCKED: (AccountLockedError, "Account is temporarily locked"),
}


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


class MembershipLookup(Protocol):
    def get_membership(
        self, user_id: str, resource_type: str, resource_id: str
    ) -> Optional[ResourceMembership]: ...


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class AuthOutcome:
    identity: Optional[Identity] = None
    rejection: Optional[AuthErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.identity is not None and self.rejection is None

    @property
    def status_code(self) -> int:
        if self.ok:
            return 200
        return _REJECTION_ERRORS[self.rejection][0].status_code

    def to_error(self) -> ServiceError:
        if self.ok:
            raise ValueError("authenticated outcome has no error")
        error_cls, message = _REJECTION_ERRORS[self.rejection]
        return error_cls(message)

    @classmethod
    def accept(cls, identity: Identity) -> "AuthOutcome":
        return cls(identity=identity)

    @classmethod
    def reject(cls, kind: AuthErrorKind) -> "AuthOutcome":
        return cls(rejection=kind)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def role_allows(role: str, required: str) -> bool:
    if role == required:
        return True
    if role == "admin" and required in {"admin", "user"}:
        return True
    return False


class RequestAuthenticator:
    def __init__(
        self,
        codec: TokenCodec,
        users: UserLookup,
        *,
        cookie_name: str = ACCESS_COOKIE_NAME,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codec = codec
        self.users = users
        self.cookie_name = cookie_name
        self._clock = clock

    def extract_token(
        self,
        authorization: Optional[str] = None,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> Optional[str]:
        """Bearer header first, then the access-token cookie."""
        token = extract_bearer(authorization)
        if token:
            return token
        if cookies:
            return cookies.get(self.cookie_name) or None
        return None

    def authenticate(
        self,
        authorization: Optional[str] = None,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> AuthOutcome:
        token = self.extract_token(authorization, cookies)
        if not token:
            return AuthOutcome.reject(AuthErrorKind.UNAUTHENTICATED)
        return self.authenticate_token(token)

    def authenticate_token(self, token: str) -> AuthOutcome:
        verification = self.codec.verify_access(token)
        if verification.error is TokenErrorKind.EXPIRED:
            return AuthOutcome.reject(AuthErrorKind.EXPIRED)
        if not verification.ok:
            logger.info("access_token_rejected", reason=verification.error.value)
            return AuthOutcome.reject(AuthErrorKind.INVALID)

        # Claims may be up to one access lifetime old; status comes from the store
        user = self.users.get_user(verification.claims["userId"])
        if not user:
            logger.warning("access_token_user_missing", user_id=verification.claims["userId"])
            return AuthOutcome.reject(AuthErrorKind.USER_NOT_FOUND)
        if not user.is_active:
            return AuthOutcome.reject(AuthErrorKind.ACCOUNT_INACTIVE)
        if user.is_locked(self._clock()):
            return AuthOutcome.reject(AuthErrorKind.ACCOUNT_LOCKED)
        return AuthOutcome.accept(Identity(user_id=user.id, email=user.email, role=user.role))


def check_resource_permission(
    store: MembershipLookup,
    identity: Identity,
    resource_type: str,
    resource_id: str,
    required_role: Optional[str] = None,
) -> bool:
    """Whether ``identity`` may act on one specific resource.

    Admins pass. A ``user`` resource is reachable only by that user. For
    anything else the caller needs a membership row for this exact
    ``(resource_type, resource_id)``; ``required_role`` additionally demands
    at least that membership role.
    """
    if identity.is_admin:
        return True
    if resource_type == "user":
        return identity.user_id == resource_id
    membership = store.get_membership(identity.user_id, resource_type, resource_id)
    if not membership:
        return False
    if required_role is None or membership.role == required_role:
        return True
    if membership.role in MEMBERSHIP_ROLES and required_role in MEMBERSHIP_ROLES:
        return MEMBERSHIP_ROLES.index(membership.role) >= MEMBERSHIP_ROLES.index(required_role)
    return False
