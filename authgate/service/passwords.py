"""Password digests, verification and strength policy.

New credentials use PBKDF2-SHA512 encoded as ``"<salt>:<derivedKeyHex>:<iterations>"``
so the parameters travel with the digest. Credentials created by the
previous argon2id scheme still verify and are flagged for rehashing.
"""
from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field
from typing import List, Tuple

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.service.errors import WeakInputError

PBKDF2_ALGO = "pbkdf2_sha512"
LEGACY_ARGON2_ALGO = "argon2id"
PBKDF2_ITERATIONS = 100_000
SALT_BYTES = 16
KEY_LENGTH = 64

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "qwerty",
        "admin",
        "letmein",
        "welcome",
        "monkey",
        "123456789",
        "password123",
        "admin123",
    }
)

_argon2 = Argon2Hasher(type=Type.ID)


def _derive(password: str, salt: str, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac(
        "sha512", password.encode("utf-8"), salt.encode("utf-8"), iterations, dklen=KEY_LENGTH
    )


def hash_password(password: str) -> str:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise WeakInputError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise WeakInputError(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    salt = secrets.token_hex(SALT_BYTES)
    derived = _derive(password, salt, PBKDF2_ITERATIONS)
    return f"{salt}:{derived.hex()}:{PBKDF2_ITERATIONS}"


def verify_password(password: str, digest: str) -> bool:
    """Recompute and compare in constant time; malformed digests verify as False."""
    try:
        salt, expected_hex, raw_iterations = digest.split(":")
        iterations = int(raw_iterations)
        expected = bytes.fromhex(expected_hex)
    except (AttributeError, ValueError):
        return False
    if not salt or iterations <= 0 or len(expected) != KEY_LENGTH:
        return False
    return hmac.compare_digest(_derive(password, salt, iterations), expected)


@dataclass
class PasswordStrength:
    valid: bool
    errors: List[str] = field(default_factory=list)


def validate_strength(password: str) -> PasswordStrength:
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not any(ch in SPECIAL_CHARACTERS for ch in password):
        errors.append("Password must contain at least one special character")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common, please choose a stronger password")
    return PasswordStrength(valid=not errors, errors=errors)


def ensure_strong(password: str) -> None:
    result = validate_strength(password)
    if not result.valid:
        raise WeakInputError("Password does not meet requirements", result.errors)


class CredentialHasher:
    """Produces ``(digest, algo)`` pairs as stored in the credential table."""

    algo = PBKDF2_ALGO

    def hash(self, password: str) -> Tuple[str, str]:
        return hash_password(password), self.algo

    def verify(self, password: str, digest: str, algo: str) -> bool:
        if algo == PBKDF2_ALGO:
            return verify_password(password, digest)
        if algo == LEGACY_ARGON2_ALGO:
            try:
                return _argon2.verify(digest, password)
            except (InvalidHash, VerifyMismatchError, VerificationError):
                return False
        return False

    def needs_rehash(self, digest: str, algo: str) -> bool:
        if algo != PBKDF2_ALGO:
            return True
        try:
            return int(digest.rsplit(":", 1)[1]) < PBKDF2_ITERATIONS
        except (IndexError, ValueError):
            return True
