from __future__ import annotations

import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from authgate.logging import get_logger
from authgate.storage.common import (
    ConstraintViolation,
    ensure_utc,
    hash_token,
    normalize_email,
    utcnow,
)
from authgate.storage.models import (
    AuditLogEntry,
    PasswordResetTokenRecord,
    RefreshTokenRecord,
    ResourceMembership,
    User,
    new_id,
)

T = TypeVar("T")

_DATETIME_FIELDS = {
    "created_at",
    "expires_at",
    "last_used_at",
    "used_at",
    "locked_until",
    "last_login_at",
}


class MemoryStore:
    """In-process store with JSON snapshots, used for tests and single-node dev."""

    def __init__(self, fs_root: str = "/tmp/authgate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.reset_tokens: Dict[str, PasswordResetTokenRecord] = {}
        self.audit_logs: List[AuditLogEntry] = []
        self.memberships: List[ResourceMembership] = []
        # Every public operation holds this lock; RLock so helpers can nest
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # users
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        status: str = "active",
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                handle=handle,
                role=role,
                status=status,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        return self._update_user(user_id, status=status)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.refresh_tokens = {
                rid: rec for rid, rec in self.refresh_tokens.items() if rec.user_id != user_id
            }
            self.reset_tokens = {
                rid: rec for rid, rec in self.reset_tokens.items() if rec.user_id != user_id
            }
            self.memberships = [m for m in self.memberships if m.user_id != user_id]
            self._persist_state()
            return True

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def increment_failed_logins(self, user_id: str, *, now: Optional[datetime] = None) -> int:
        """Bump the failure counter, starting over once an earlier lock has elapsed."""
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            if user.locked_until is not None and user.locked_until <= now:
                user.failed_login_attempts = 0
                user.locked_until = None
            user.failed_login_attempts += 1
            self._persist_state()
            return user.failed_login_attempts

    def lock_user(self, user_id: str, until: datetime) -> None:
        self._update_user(user_id, locked_until=until)

    def reset_login_state(
        self, user_id: str, *, last_login_at: Optional[datetime] = None
    ) -> None:
        updates: Dict[str, Any] = {"failed_login_attempts": 0, "locked_until": None}
        if last_login_at is not None:
            updates["last_login_at"] = last_login_at
        self._update_user(user_id, **updates)

    def _update_user(self, user_id: str, **updates: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in updates.items():
                setattr(user, name, value)
            self._persist_state()
            return replace(user)

    # refresh tokens
    def store_refresh_token(
        self,
        user_id: str,
        raw_token: str,
        *,
        expires_at: datetime,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        token_hash = hash_token(raw_token)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
            if any(rec.token_hash == token_hash for rec in self.refresh_tokens.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            record = RefreshTokenRecord(
                id=new_id(),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
                device_fingerprint=device_fingerprint,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.refresh_tokens[record.id] = record
            self._persist_state()
            return record.id

    def find_active_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.token_hash == token_hash and record.is_active:
                    return replace(record)
            return None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [replace(r) for r in self.refresh_tokens.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def deactivate_refresh_token(
        self, record_id: str, *, last_used_at: Optional[datetime] = None
    ) -> bool:
        """Flip ``is_active`` off only if it is still on; False means someone beat us."""
        with self._data_lock:
            record = self.refresh_tokens.get(record_id)
            if not record or not record.is_active:
                return False
            record.is_active = False
            if last_used_at is not None:
                record.last_used_at = last_used_at
            self._persist_state()
            return True

    def deactivate_refresh_token_by_hash(
        self, token_hash: str, *, user_id: Optional[str] = None
    ) -> Optional[str]:
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.token_hash != token_hash or not record.is_active:
                    continue
                if user_id is not None and record.user_id != user_id:
                    continue
                record.is_active = False
                self._persist_state()
                return record.id
            return None

    def deactivate_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.is_active:
                    record.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                rid
                for rid, rec in self.refresh_tokens.items()
                if not rec.is_active and rec.expires_at < now
            ]
            for rid in stale:
                self.refresh_tokens.pop(rid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # password reset tokens
    def store_password_reset_token(
        self,
        user_id: str,
        raw_token: str,
        *,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        token_hash = hash_token(raw_token)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("reset token user missing", {"user_id": user_id})
            if any(rec.token_hash == token_hash for rec in self.reset_tokens.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            record = PasswordResetTokenRecord(
                id=new_id(),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.reset_tokens[record.id] = record
            self._persist_state()
            return record.id

    def find_password_reset_token(self, token_hash: str) -> Optional[PasswordResetTokenRecord]:
        with self._data_lock:
            for record in self.reset_tokens.values():
                if record.token_hash == token_hash:
                    return replace(record)
            return None

    def mark_password_reset_used(
        self, record_id: str, *, used_at: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            record = self.reset_tokens.get(record_id)
            if not record or record.is_used:
                return False
            record.is_used = True
            record.used_at = used_at or utcnow()
            self._persist_state()
            return True

    def purge_expired_password_reset_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [rid for rid, rec in self.reset_tokens.items() if rec.expires_at < now]
            for rid in stale:
                self.reset_tokens.pop(rid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_logs.append(entry)
            self._persist_state()
            return entry

    def list_audit_logs(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [
                e
                for e in self.audit_logs
                if (actor_id is None or e.actor_id == actor_id)
                and (action is None or e.action == action)
            ]
        return list(reversed(entries))[:limit]

    # memberships
    def add_membership(
        self, user_id: str, resource_type: str, resource_id: str, role: str = "member"
    ) -> ResourceMembership:
        with self._data_lock:
            existing = self.get_membership(user_id, resource_type, resource_id)
            if existing:
                return existing
            membership = ResourceMembership(
                user_id=user_id,
                resource_type=resource_type,
                resource_id=resource_id,
                role=role,
            )
            self.memberships.append(membership)
            self._persist_state()
            return membership

    def get_membership(
        self, user_id: str, resource_type: str, resource_id: str
    ) -> Optional[ResourceMembership]:
        with self._data_lock:
            return next(
                (
                    m
                    for m in self.memberships
                    if m.user_id == user_id
                    and m.resource_type == resource_type
                    and m.resource_id == resource_id
                ),
                None,
            )

    # persistence
    @staticmethod
    def _dump(record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _load(model: Type[T], data: dict) -> T:
        known = {f.name for f in fields(model)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key in _DATETIME_FIELDS and isinstance(value, str):
                value = ensure_utc(datetime.fromisoformat(value))
            values[key] = value
        return model(**values)

    def _persist_state(self) -> None:
        state = {
            "users": [self._dump(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [self._dump(r) for r in self.refresh_tokens.values()],
            "reset_tokens": [self._dump(r) for r in self.reset_tokens.values()],
            "audit_logs": [self._dump(e) for e in self.audit_logs],
            "memberships": [self._dump(m) for m in self.memberships],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._load(User, u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            r["id"]: self._load(RefreshTokenRecord, r) for r in data.get("refresh_tokens", [])
        }
        self.reset_tokens = {
            r["id"]: self._load(PasswordResetTokenRecord, r)
            for r in data.get("reset_tokens", [])
        }
        self.audit_logs = [self._load(AuditLogEntry, e) for e in data.get("audit_logs", [])]
        self.memberships = [
            self._load(ResourceMembership, m) for m in data.get("memberships", [])
        ]
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True
