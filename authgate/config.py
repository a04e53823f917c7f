from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from authgate.logging import get_logger

logger = get_logger(__name__)

_SECRET_FILES = {
    "jwt_secret": ".jwt_secret",
    "jwt_refresh_secret": ".jwt_refresh_secret",
}
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(file_name: str) -> str:
    """Return a persisted signing secret, generating one on first use.

    Tokens stay valid across restarts because the generated value is written
    to ``SHARED_FS_ROOT`` with owner-only permissions.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authgate"))
    secret_path = fs_root / file_name

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may be owned by another user (e.g. a mounted volume)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{file_name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist signing secret; set JWT_SECRET/JWT_REFRESH_SECRET "
            "or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the token service, read from env and ``.env``."""

    database_url: str = env_field("postgresql://localhost:5432/authgate", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; exposes reset tokens in responses",
    )

    # Signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("platform", "JWT_ISSUER")
    jwt_audience: str = env_field("client", "JWT_AUDIENCE")

    # Lifetimes
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    remember_me_refresh_ttl_days: int = env_field(30, "REMEMBER_ME_REFRESH_TTL_DAYS", gt=0)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    # Lockout
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS", gt=0)
    account_lockout_minutes: int = env_field(30, "ACCOUNT_LOCKOUT_MINUTES", gt=0)

    # Web boundary
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(3, "RESET_RATE_LIMIT_PER_MINUTE")
    token_cleanup_interval_seconds: int = env_field(3600, "TOKEN_CLEANUP_INTERVAL_SECONDS")

    # SMTP / email; unset host means reset links are logged instead of sent
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Platform", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        return _load_or_create_secret(_SECRET_FILES[info.field_name])

    @model_validator(mode="after")
    def _warn_shared_secret(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            logger.warning(
                "jwt_secrets_shared",
                message="access and refresh tokens are signed with the same secret",
            )
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
