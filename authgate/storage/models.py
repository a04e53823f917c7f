from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from authgate.storage.common import utcnow

USER_STATUSES = ("active", "inactive", "suspended")
USER_ROLES = ("user", "admin")


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    role: str = "user"
    status: str = "active"
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())


@dataclass
class RefreshTokenRecord:
    """Stored half of an issued refresh token; only the hash is kept."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    device_fingerprint: Optional[str] = None
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())


@dataclass
class PasswordResetTokenRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())


@dataclass
class AuditLogEntry:
    id: str
    action: str
    actor_id: Optional[str] = None
    target_resource: Optional[str] = None
    target_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ResourceMembership:
    user_id: str
    resource_type: str
    resource_id: str
    role: str = "member"
    created_at: datetime = field(default_factory=utcnow)
