from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from authgate.logging import get_logger
from authgate.storage.models import AuditLogEntry, new_id


class AuditAction(str, Enum):
    """Append-only vocabulary; add new tags, never repurpose existing ones."""

    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    TOKEN_REFRESH_CREATED = "TOKEN_REFRESH_CREATED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET = "PASSWORD_RESET"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    USER_REGISTERED = "USER_REGISTERED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    ALL_TOKENS_REVOKED = "ALL_TOKENS_REVOKED"
    LOGOUT = "LOGOUT"


class AuditStore(Protocol):
    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def list_audit_logs(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]: ...


class AuditLog:
    """Writes audit entries to the store and mirrors them to the structured log.

    A failing audit write must not undo the operation being audited, so
    store errors are logged and dropped here.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    def record(
        self,
        action: AuditAction,
        *,
        actor_id: Optional[str] = None,
        target_resource: Optional[str] = None,
        target_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        entry = AuditLogEntry(
            id=new_id(),
            action=AuditAction(action).value,
            actor_id=actor_id,
            target_resource=target_resource,
            target_id=target_id,
            metadata=dict(metadata or {}),
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            error_message=error_message,
        )
        try:
            stored = self.store.append_audit_log(entry)
        except Exception as exc:
            self.logger.error(
                "audit_log_write_failed",
                action=entry.action,
                actor_id=actor_id,
                error=str(exc),
            )
            return None
        log = self.logger.info if success else self.logger.warning
        log(
            "audit_event",
            action=entry.action,
            actor_id=actor_id,
            target_resource=target_resource,
            target_id=target_id,
            success=success,
        )
        return stored

    def recent(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        return self.store.list_audit_logs(actor_id=actor_id, action=action, limit=limit)
