"""Compact HS256 tokens for access and refresh credentials.

Verification never raises: it returns a ``TokenVerification`` whose
``error`` is one of three kinds. Expiry is judged from the ``exp`` claim
alone, before the signature is checked, so an expired token always
reports ``EXPIRED`` whether or not its signature is intact.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional

from authgate.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenErrorKind(str, Enum):
    EXPIRED = "expired"
    INVALID = "invalid"
    OTHER = "other"


@dataclass(frozen=True)
class TokenVerification:
    claims: Optional[dict[str, Any]] = None
    error: Optional[TokenErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.claims is not None

    @classmethod
    def success(cls, claims: dict[str, Any]) -> "TokenVerification":
        return cls(claims=claims)

    @classmethod
    def failure(cls, kind: TokenErrorKind) -> "TokenVerification":
        return cls(error=kind)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def decode_unverified(token: str) -> Optional[dict[str, Any]]:
    """Read the payload without checking anything. Display use only."""
    try:
        _, payload_b64, _ = token.split(".")
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError, AttributeError):
        return None
    return payload if isinstance(payload, dict) else None


class TokenCodec:
    """Signs and verifies access/refresh tokens with separate secrets.

    Holds only immutable configuration; safe to share across requests.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str = "platform",
        audience: str = "client",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must be configured")
        self._access_secret = access_secret.encode()
        self._refresh_secret = refresh_secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            **kwargs,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.access_ttl.total_seconds())

    def sign_access(self, user_id: str, email: str, role: str) -> str:
        claims = {"userId": user_id, "email": email, "role": role, "type": ACCESS_TOKEN_TYPE}
        return self._encode(claims, self._access_secret, self.access_ttl)

    def sign_refresh(self, ttl: Optional[timedelta] = None) -> str:
        # jti keeps two tokens minted in the same second distinct
        claims = {"type": REFRESH_TOKEN_TYPE, "jti": uuid.uuid4().hex}
        return self._encode(claims, self._refresh_secret, ttl or self.refresh_ttl)

    def verify_access(self, token: str) -> TokenVerification:
        result = self._decode(token, self._access_secret, ACCESS_TOKEN_TYPE)
        if result.ok and not result.claims.get("userId"):
            return TokenVerification.failure(TokenErrorKind.INVALID)
        return result

    def verify_refresh(self, token: str) -> TokenVerification:
        return self._decode(token, self._refresh_secret, REFRESH_TOKEN_TYPE)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return _encode_segment(hmac.new(secret, signing_input.encode(), hashlib.sha256).digest())

    def _encode(self, claims: dict[str, Any], secret: bytes, ttl: timedelta) -> str:
        issued_at = int(self._clock())
        payload = {
            **claims,
            "iat": issued_at,
            "exp": issued_at + int(ttl.total_seconds()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode(self, token: str, secret: bytes, expected_type: str) -> TokenVerification:
        if not isinstance(token, str):
            return TokenVerification.failure(TokenErrorKind.INVALID)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            return TokenVerification.failure(TokenErrorKind.INVALID)
        if not isinstance(header, dict) or not isinstance(payload, dict):
            return TokenVerification.failure(TokenErrorKind.INVALID)
        # Reject anything but HS256 to rule out alg=none and key confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return TokenVerification.failure(TokenErrorKind.INVALID)

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return TokenVerification.failure(TokenErrorKind.INVALID)
        if self._clock() > exp:
            return TokenVerification.failure(TokenErrorKind.EXPIRED)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        # compare bytes; str comparison raises on non-ASCII input
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("utf-8")):
            return TokenVerification.failure(TokenErrorKind.INVALID)
        if payload.get("type") != expected_type:
            return TokenVerification.failure(TokenErrorKind.INVALID)
        if payload.get("iss") != self.issuer or not self._audience_matches(payload.get("aud")):
            return TokenVerification.failure(TokenErrorKind.OTHER)
        return TokenVerification.success(payload)

    def _audience_matches(self, aud: Any) -> bool:
        if isinstance(aud, str):
            return aud == self.audience
        if isinstance(aud, list):
            return self.audience in aud
        return False
