from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from authgate.config import Settings
from authgate.logging import get_logger, hash_email
from authgate.service.audit import AuditAction, AuditLog
from authgate.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    UserNotFoundError,
    WeakInputError,
)
from authgate.service.passwords import CredentialHasher, ensure_strong
from authgate.service.sessions import SessionManager, TokenPair
from authgate.storage.common import ConstraintViolation, hash_token, normalize_email, utcnow
from authgate.storage.models import PasswordResetTokenRecord, User

# One message for unknown email and wrong password alike
GENERIC_LOGIN_FAILURE = "Invalid email or password"
RESET_TOKEN_BYTES = 32


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        status: str = "active",
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def increment_failed_logins(self, user_id: str, *, now: Optional[datetime] = None) -> int: ...

    def lock_user(self, user_id: str, until: datetime) -> None: ...

    def reset_login_state(
        self, user_id: str, *, last_login_at: Optional[datetime] = None
    ) -> None: ...

    def store_password_reset_token(
        self,
        user_id: str,
        raw_token: str,
        *,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str: ...

    def find_password_reset_token(self, token_hash: str) -> Optional[PasswordResetTokenRecord]: ...

    def mark_password_reset_used(
        self, record_id: str, *, used_at: Optional[datetime] = None
    ) -> bool: ...


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Registration, login with lockout, and password change/reset flows."""

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        audit: AuditLog,
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.audit = audit
        self.settings = settings
        self.hasher = hasher or CredentialHasher()
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    async def register(
        self,
        email: str,
        password: str,
        *,
        handle: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        ensure_strong(password)
        normalized = normalize_email(email)
        try:
            user = self.store.create_user(normalized, handle)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered", detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.audit.record(
            AuditAction.USER_REGISTERED,
            actor_id=user.id,
            target_resource="user",
            target_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("user_registered", user_id=user.id, email_hash=hash_email(normalized))
        tokens = await self.sessions.create_token_pair(
            user.id,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return LoginResult(user=user, tokens=tokens)

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        normalized = normalize_email(email)
        now = self._now()
        user = self.store.get_user_by_email(normalized)
        if not user:
            self.logger.info("login_unknown_email", email_hash=hash_email(normalized))
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                target_resource="user",
                metadata={"email_hash": hash_email(normalized)},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="Unknown email",
            )
            raise InvalidCredentialsError(GENERIC_LOGIN_FAILURE)

        if user.is_locked(now):
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                actor_id=user.id,
                target_resource="user",
                target_id=user.id,
                metadata={"locked_until": user.locked_until.isoformat()},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="Account locked",
            )
            raise AccountLockedError(
                "Account is temporarily locked due to repeated failed logins",
                detail={"locked_until": user.locked_until.isoformat()},
            )

        if not user.is_active:
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                actor_id=user.id,
                target_resource="user",
                target_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message=f"Account {user.status}",
            )
            raise AccountInactiveError("Account is not active")

        if not self.verify_password(user.id, password):
            self._record_failed_login(user, now, ip_address=ip_address, user_agent=user_agent)
            raise InvalidCredentialsError(GENERIC_LOGIN_FAILURE)

        self.store.reset_login_state(user.id, last_login_at=now)
        self.audit.record(
            AuditAction.LOGIN_SUCCESS,
            actor_id=user.id,
            target_resource="user",
            target_id=user.id,
            metadata={"remember_me": remember_me, "device_fingerprint": device_fingerprint},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        tokens = await self.sessions.create_token_pair(
            user.id,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
        )
        return LoginResult(user=self.store.get_user(user.id) or user, tokens=tokens)

    def _record_failed_login(
        self,
        user: User,
        now: datetime,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        attempts = self.store.increment_failed_logins(user.id, now=now)
        locked_until: Optional[datetime] = None
        if attempts >= self.settings.max_failed_login_attempts:
            locked_until = now + timedelta(minutes=self.settings.account_lockout_minutes)
            self.store.lock_user(user.id, locked_until)
            self.logger.warning(
                "account_locked",
                user_id=user.id,
                failed_attempts=attempts,
                locked_until=locked_until.isoformat(),
            )
        self.audit.record(
            AuditAction.LOGIN_FAILED,
            actor_id=user.id,
            target_resource="user",
            target_id=user.id,
            metadata={
                "failed_attempts": attempts,
                "account_locked": locked_until is not None,
                "locked_until": locked_until.isoformat() if locked_until else None,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message=f"Failed login attempt {attempts}",
        )

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Returns the number of refresh tokens revoked by the change."""
        if not self.store.get_user(user_id):
            raise UserNotFoundError("User not found")
        if not self.verify_password(user_id, current_password):
            self.audit.record(
                AuditAction.PASSWORD_CHANGED,
                actor_id=user_id,
                target_resource="user",
                target_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="Current password is incorrect",
            )
            raise InvalidCredentialsError("Current password is incorrect")
        ensure_strong(new_password)
        self.save_password(user_id, new_password)
        self.audit.record(
            AuditAction.PASSWORD_CHANGED,
            actor_id=user_id,
            target_resource="user",
            target_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return await self.sessions.revoke_all_refresh_tokens(user_id, reason="password_changed")

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Create a reset token for a known email.

        Returns the raw token, or None when no account matches. Callers must
        respond identically in both cases.
        """
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(normalized))
            return None
        raw_token = secrets.token_urlsafe(RESET_TOKEN_BYTES)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        record_id = self.store.store_password_reset_token(
            user.id,
            raw_token,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUESTED,
            actor_id=user.id,
            target_resource="password_reset_token",
            target_id=record_id,
            metadata={"email_hash": hash_email(normalized)},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return raw_token

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Consume a reset token and set a new password; returns the user id."""
        ensure_strong(new_password)
        now = self._now()
        record = self.store.find_password_reset_token(hash_token(token))
        if not record or record.is_used or record.is_expired(now):
            self.logger.warning(
                "password_reset_invalid_token",
                reason="unknown" if not record else ("used" if record.is_used else "expired"),
            )
            raise InvalidTokenError("Invalid or expired reset token", status_code=400)
        # Claim the token before touching the password so a concurrent reset loses
        if not self.store.mark_password_reset_used(record.id, used_at=now):
            raise InvalidTokenError("Invalid or expired reset token", status_code=400)
        if not self.store.get_user(record.user_id):
            raise InvalidTokenError("Invalid or expired reset token", status_code=400)

        self.save_password(record.user_id, new_password)
        self.store.reset_login_state(record.user_id)
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            actor_id=record.user_id,
            target_resource="user",
            target_id=record.user_id,
            metadata={"reset_token_id": record.id},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.sessions.revoke_all_refresh_tokens(record.user_id, reason="password_reset")
        self.logger.info("password_reset_completed", user_id=record.user_id)
        return record.user_id

    def verify_password(self, user_id: str, password: str) -> bool:
        """Check a user's password, upgrading legacy digests on success."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        digest, algo = record
        if not self.hasher.verify(password, digest, algo):
            return False
        if self.hasher.needs_rehash(digest, algo):
            try:
                self.save_password(user_id, password)
            except WeakInputError:
                # Legacy passwords may predate the length rules; keep the old digest
                self.logger.info("password_rehash_skipped", user_id=user_id, algo=algo)
            else:
                self.logger.info("password_rehashed", user_id=user_id, previous_algo=algo)
        return True

    def save_password(self, user_id: str, password: str) -> None:
        digest, algo = self.hasher.hash(password)
        self.store.save_password(user_id, digest, algo)
