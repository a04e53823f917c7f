from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key constraint would be broken."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest used as the lookup key for stored tokens.

    Raw refresh and reset tokens are never persisted; every lookup hashes the
    presented value and matches on equality.
    """
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise naive timestamps (legacy rows, JSON state) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


__all__ = [
    "ConstraintViolation",
    "ensure_utc",
    "hash_token",
    "normalize_email",
    "utcnow",
]
