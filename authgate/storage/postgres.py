from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "refresh_token",
    "password_reset_token",
    "audit_log",
    "resource_member",
)


class PostgresStore:
    """Postgres-backed store; every mutation is a single conditional statement."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            handle=row.get("handle"),
            role=row.get("role", "user"),
            status=row.get("status", "active"),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=ensure_utc(row.get("locked_until")),
            last_login_at=ensure_utc(row.get("last_login_at")),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            meta=row.get("meta"),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=ensure_utc(row["expires_at"]),
            device_fingerprint=row.get("device_fingerprint"),
            is_active=bool(row.get("is_active", True)),
            last_used_at=ensure_utc(row.get("last_used_at")),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _reset_from_row(row: dict) -> PasswordResetTokenRecord:
        return PasswordResetTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=ensure_utc(row["expires_at"]),
            is_used=bool(row.get("is_used", False)),
            used_at=ensure_utc(row.get("used_at")),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _audit_from_row(row: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(row["id"]),
            action=row["action"],
            actor_id=str(row["actor_id"]) if row.get("actor_id") else None,
            target_resource=row.get("target_resource"),
            target_id=row.get("target_id"),
            metadata=row.get("metadata") or {},
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            success=bool(row.get("success", True)),
            error_message=row.get("error_message"),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        status: str = "active",
        meta: Optional[dict] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, handle, role, status, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        normalize_email(email),
                        handle,
                        role,
                        status,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *", (role, user_id)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *", (status, user_id)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def increment_failed_logins(self, user_id: str, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %s THEN NULL
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (now, now, user_id),
            ).fetchone()
        return int(row["failed_login_attempts"]) if row else 0

    def lock_user(self, user_id: str, until: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE app_user SET locked_until = %s WHERE id = %s", (until, user_id))

    def reset_login_state(
        self, user_id: str, *, last_login_at: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0,
                    locked_until = NULL,
                    last_login_at = COALESCE(%s, last_login_at)
                WHERE id = %s
                """,
                (last_login_at, user_id),
            )

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
        record_id = new_id()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token
                        (id, user_id, token_hash, device_fingerprint, expires_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record_id,
                        user_id,
                        hash_token(raw_token),
                        device_fingerprint,
                        expires_at,
                        ip_address,
                        user_agent,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
        return record_id

    def find_active_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s AND is_active",
                (token_hash,),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def deactivate_refresh_token(
        self, record_id: str, *, last_used_at: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_active = FALSE, last_used_at = COALESCE(%s, last_used_at)
                WHERE id = %s AND is_active
                """,
                (last_used_at, record_id),
            )
            return result.rowcount == 1

    def deactivate_refresh_token_by_hash(
        self, token_hash: str, *, user_id: Optional[str] = None
    ) -> Optional[str]:
        query = "UPDATE refresh_token SET is_active = FALSE WHERE token_hash = %s AND is_active"
        params: tuple[Any, ...] = (token_hash,)
        if user_id is not None:
            query += " AND user_id = %s"
            params = (token_hash, user_id)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING id", params).fetchone()
        return str(row["id"]) if row else None

    def deactivate_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET is_active = FALSE WHERE user_id = %s AND is_active",
                (user_id,),
            )
            return result.rowcount

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE NOT is_active AND expires_at < %s",
                (now or utcnow(),),
            )
            return result.rowcount

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
        record_id = new_id()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token
                        (id, user_id, token_hash, expires_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (record_id, user_id, hash_token(raw_token), expires_at, ip_address, user_agent),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("reset token user missing", {"user_id": user_id})
        return record_id

    def find_password_reset_token(self, token_hash: str) -> Optional[PasswordResetTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def mark_password_reset_used(
        self, record_id: str, *, used_at: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE password_reset_token
                SET is_used = TRUE, used_at = %s
                WHERE id = %s AND NOT is_used
                """,
                (used_at or utcnow(), record_id),
            )
            return result.rowcount == 1

    def purge_expired_password_reset_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at < %s", (now or utcnow(),)
            )
            return result.rowcount

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log
                    (id, actor_id, action, target_resource, target_id, metadata,
                     ip_address, user_agent, success, error_message, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.actor_id,
                    entry.action,
                    entry.target_resource,
                    entry.target_id,
                    json.dumps(entry.metadata or {}, default=str),
                    entry.ip_address,
                    entry.user_agent,
                    entry.success,
                    entry.error_message,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_logs(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        clauses = []
        params: list[Any] = []
        if actor_id is not None:
            clauses.append("actor_id = %s")
            params.append(actor_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]

    # memberships
    def add_membership(
        self, user_id: str, resource_type: str, resource_id: str, role: str = "member"
    ) -> ResourceMembership:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO resource_member (user_id, resource_type, resource_id, role)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, resource_type, resource_id) DO NOTHING
                """,
                (user_id, resource_type, resource_id, role),
            )
        return self.get_membership(user_id, resource_type, resource_id)

    def get_membership(
        self, user_id: str, resource_type: str, resource_id: str
    ) -> Optional[ResourceMembership]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM resource_member
                WHERE user_id = %s AND resource_type = %s AND resource_id = %s
                """,
                (user_id, resource_type, resource_id),
            ).fetchone()
        if not row:
            return None
        return ResourceMembership(
            user_id=str(row["user_id"]),
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            role=row.get("role", "member"),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )
