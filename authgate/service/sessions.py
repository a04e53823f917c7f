"""Refresh-token issuance, rotation and revocation.

A refresh token lineage moves ``active -> rotated|revoked -> purged`` and
never returns to active. Rotation relies on the store's conditional
deactivate: when two requests present the same token concurrently, only
one of them flips the record and the other sees
``TokenNotFoundOrInactiveError``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from authgate.logging import get_logger
from authgate.service.audit import AuditAction, AuditLog
from authgate.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenNotFoundOrInactiveError,
    UserNotFoundError,
)
from authgate.service.tokens import TokenCodec, TokenErrorKind
from authgate.storage.common import hash_token, utcnow
from authgate.storage.models import RefreshTokenRecord, User


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def store_refresh_token(
        self,
        user_id: str,
        raw_token: str,
        *,
        expires_at: datetime,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str: ...

    def find_active_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def deactivate_refresh_token(
        self, record_id: str, *, last_used_at: Optional[datetime] = None
    ) -> bool: ...

    def deactivate_refresh_token_by_hash(
        self, token_hash: str, *, user_id: Optional[str] = None
    ) -> Optional[str]: ...

    def deactivate_user_refresh_tokens(self, user_id: str) -> int: ...

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def purge_expired_password_reset_tokens(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    user_id: str
    refresh_token_id: Optional[str] = None
    token_type: str = "Bearer"


class SessionManager:
    """Issues token pairs and enforces single-use refresh rotation."""

    def __init__(
        self,
        store: TokenStore,
        codec: TokenCodec,
        audit: AuditLog,
        *,
        refresh_ttl: timedelta = timedelta(days=7),
        remember_me_ttl: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.audit = audit
        self.refresh_ttl = refresh_ttl
        self.remember_me_ttl = remember_me_ttl
        self._clock = clock
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(
        cls, store: TokenStore, codec: TokenCodec, audit: AuditLog, settings
    ) -> "SessionManager":
        return cls(
            store,
            codec,
            audit,
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            remember_me_ttl=timedelta(days=settings.remember_me_refresh_ttl_days),
        )

    def _now(self) -> datetime:
        return self._clock()

    def _rotated_ttl(self, record: RefreshTokenRecord) -> timedelta:
        # Records that outlive the standard window were issued under remember-me
        lifetime = record.expires_at - record.created_at
        threshold = (self.refresh_ttl + self.remember_me_ttl) / 2
        if self.remember_me_ttl > self.refresh_ttl and lifetime > threshold:
            return self.remember_me_ttl
        return self.refresh_ttl

    async def create_token_pair(
        self,
        user_id: str,
        *,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
        refresh_ttl: Optional[timedelta] = None,
    ) -> TokenPair:
        user = self.store.get_user(user_id)
        if not user:
            self.logger.warning("token_pair_user_missing", user_id=user_id)
            raise UserNotFoundError("User not found")

        ttl = refresh_ttl or (self.remember_me_ttl if remember_me else self.refresh_ttl)
        access_token = self.codec.sign_access(user.id, user.email, user.role)
        refresh_token = self.codec.sign_refresh(ttl)
        record_id = self.store.store_refresh_token(
            user.id,
            refresh_token,
            expires_at=self._now() + ttl,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.audit.record(
            AuditAction.TOKEN_REFRESH_CREATED,
            actor_id=user.id,
            target_resource="refresh_token",
            target_id=record_id,
            metadata={
                "device_fingerprint": device_fingerprint,
                "remember_me": ttl > self.refresh_ttl,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.codec.access_ttl_seconds,
            refresh_expires_in=int(ttl.total_seconds()),
            user_id=user.id,
            refresh_token_id=record_id,
        )

    async def refresh_tokens(
        self,
        refresh_token: str,
        *,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        verification = self.codec.verify_refresh(refresh_token)
        if verification.error is TokenErrorKind.EXPIRED:
            raise TokenExpiredError("Refresh token expired")
        if not verification.ok:
            self.logger.warning("refresh_token_rejected", reason=verification.error.value)
            raise InvalidTokenError("Invalid refresh token")

        record = self.store.find_active_refresh_token(hash_token(refresh_token))
        if not record:
            # Rotated, revoked or never issued; a replay looks exactly like this
            self.logger.warning("refresh_token_not_active", ip_address=ip_address)
            raise TokenNotFoundOrInactiveError("Refresh token is no longer valid")

        now = self._now()
        if record.expires_at < now:
            self.store.deactivate_refresh_token(record.id, last_used_at=now)
            self.logger.info("refresh_record_expired", record_id=record.id, user_id=record.user_id)
            raise TokenExpiredError("Refresh token expired")

        if not self.store.deactivate_refresh_token(record.id, last_used_at=now):
            self.logger.warning("refresh_rotation_race_lost", record_id=record.id)
            raise TokenNotFoundOrInactiveError("Refresh token is no longer valid")

        if (
            device_fingerprint
            and record.device_fingerprint
            and device_fingerprint != record.device_fingerprint
        ):
            self.logger.warning(
                "refresh_device_changed",
                record_id=record.id,
                user_id=record.user_id,
            )

        pair = await self.create_token_pair(
            record.user_id,
            device_fingerprint=device_fingerprint or record.device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            refresh_ttl=self._rotated_ttl(record),
        )
        self.audit.record(
            AuditAction.TOKEN_REFRESHED,
            actor_id=record.user_id,
            target_resource="refresh_token",
            target_id=record.id,
            metadata={"replaced_by": pair.refresh_token_id},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return pair

    async def revoke_refresh_token(
        self,
        refresh_token: str,
        user_id: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        record_id = self.store.deactivate_refresh_token_by_hash(
            hash_token(refresh_token), user_id=user_id
        )
        if not record_id:
            raise TokenNotFoundError("Refresh token not found")
        self.audit.record(
            AuditAction.TOKEN_REVOKED,
            actor_id=user_id,
            target_resource="refresh_token",
            target_id=record_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return record_id

    async def revoke_all_refresh_tokens(
        self, user_id: str, *, reason: Optional[str] = None
    ) -> int:
        revoked = self.store.deactivate_user_refresh_tokens(user_id)
        self.audit.record(
            AuditAction.ALL_TOKENS_REVOKED,
            actor_id=user_id,
            target_resource="user",
            target_id=user_id,
            metadata={"revoked": revoked, "reason": reason},
        )
        self.logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked, reason=reason)
        return revoked

    async def cleanup_expired_tokens(self) -> Dict[str, int]:
        now = self._now()
        purged = {
            "refresh_tokens": self.store.purge_expired_refresh_tokens(now),
            "reset_tokens": self.store.purge_expired_password_reset_tokens(now),
        }
        if any(purged.values()):
            self.logger.info("expired_tokens_purged", **purged)
        return purged
