"""Unit tests for the auth service.

Tests for:
- Registration and duplicate detection
- Login, generic failures and account lockout
- Password change and reset flows
- Upgrading legacy password digests
"""

import asyncio
from datetime import timedelta

import pytest
from argon2 import PasswordHasher

from authgate.config import Settings
from authgate.service.audit import AuditAction, AuditLog
from authgate.service.auth import GENERIC_LOGIN_FAILURE, AuthService
from authgate.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    TokenNotFoundOrInactiveError,
    WeakInputError,
)
from authgate.service.passwords import LEGACY_ARGON2_ALGO, PBKDF2_ALGO
from authgate.service.sessions import SessionManager
from authgate.service.tokens import TokenCodec
from authgate.storage.common import utcnow
from authgate.storage.memory import MemoryStore

PASSWORD = "Str0ng!Passw0rd"
NEW_PASSWORD = "N3w!Passw0rd-2"


class DateClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="auth-unit-access-secret-0123456789abcdef",
        jwt_refresh_secret="auth-unit-refresh-secret-0123456789abcdef",
        max_failed_login_attempts=5,
        account_lockout_minutes=30,
        password_reset_ttl_minutes=60,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def clock():
    return DateClock()


@pytest.fixture
def auth_service(memory_store, settings, clock):
    audit = AuditLog(memory_store)
    sessions = SessionManager.from_settings(
        memory_store, TokenCodec.from_settings(settings), audit, settings
    )
    return AuthService(memory_store, sessions, audit, settings, clock=clock)


@pytest.fixture
def registered(auth_service):
    return asyncio.run(auth_service.register("person@example.com", PASSWORD)).user


class TestRegistration:
    async def test_register_returns_tokens(self, auth_service, memory_store):
        result = await auth_service.register("New.User@Example.com", PASSWORD, handle="newbie")
        assert result.user.email == "new.user@example.com"
        assert result.tokens.access_token
        assert memory_store.get_password_record(result.user.id)[1] == PBKDF2_ALGO
        assert memory_store.list_audit_logs(action=AuditAction.USER_REGISTERED.value)

    async def test_duplicate_email(self, auth_service, registered):
        with pytest.raises(ConflictError):
            await auth_service.register("PERSON@example.com", PASSWORD)

    async def test_weak_password_lists_every_problem(self, auth_service, memory_store):
        with pytest.raises(WeakInputError) as excinfo:
            await auth_service.register("weak@example.com", "weakpass")
        assert len(excinfo.value.errors) == 3
        assert memory_store.get_user_by_email("weak@example.com") is None


class TestLogin:
    async def test_login_success_resets_state(self, auth_service, memory_store, registered):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("person@example.com", "Wrong!Passw0rd")
        result = await auth_service.login("person@example.com", PASSWORD)
        assert result.user.failed_login_attempts == 0
        assert result.user.last_login_at is not None
        assert memory_store.list_audit_logs(action=AuditAction.LOGIN_SUCCESS.value)

    async def test_unknown_email_and_wrong_password_look_alike(self, auth_service, registered):
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login("person@example.com", "Wrong!Passw0rd")
        assert unknown.value.message == wrong.value.message == GENERIC_LOGIN_FAILURE
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_unknown_email_audited_without_actor(self, auth_service, memory_store):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("nobody@example.com", PASSWORD, ip_address="10.1.1.1")
        entry = memory_store.list_audit_logs(action=AuditAction.LOGIN_FAILED.value)[0]
        assert entry.actor_id is None
        assert entry.success is False
        assert "email_hash" in entry.metadata
        assert "nobody@example.com" not in str(entry.metadata)

    async def test_lockout_after_five_failures(self, auth_service, memory_store, registered, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("person@example.com", "Wrong!Passw0rd")

        with pytest.raises(AccountLockedError) as excinfo:
            await auth_service.login("person@example.com", PASSWORD)
        assert excinfo.value.status_code == 423
        assert "locked_until" in excinfo.value.detail

        last_failure = memory_store.list_audit_logs(action=AuditAction.LOGIN_FAILED.value)[1]
        assert last_failure.metadata["account_locked"] is True
        assert last_failure.metadata["failed_attempts"] == 5

        clock.advance(minutes=31)
        result = await auth_service.login("person@example.com", PASSWORD)
        assert result.user.locked_until is None

    async def test_counter_restarts_after_lock_expires(
        self, auth_service, memory_store, registered, clock
    ):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("person@example.com", "Wrong!Passw0rd")
        clock.advance(minutes=31)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("person@example.com", "Wrong!Passw0rd")
        assert memory_store.get_user(registered.id).failed_login_attempts == 1
        assert not memory_store.get_user(registered.id).is_locked(clock())

    async def test_inactive_account(self, auth_service, memory_store, registered):
        memory_store.set_user_status(registered.id, "suspended")
        with pytest.raises(AccountInactiveError):
            await auth_service.login("person@example.com", PASSWORD)

    async def test_remember_me_lengthens_refresh(self, auth_service, registered):
        result = await auth_service.login("person@example.com", PASSWORD, remember_me=True)
        assert result.tokens.refresh_expires_in == 30 * 24 * 3600


class TestPasswordChange:
    async def test_change_revokes_sessions(self, auth_service, registered):
        session = await auth_service.login("person@example.com", PASSWORD)
        revoked = await auth_service.change_password(registered.id, PASSWORD, NEW_PASSWORD)
        assert revoked == 2
        with pytest.raises(TokenNotFoundOrInactiveError):
            await auth_service.sessions.refresh_tokens(session.tokens.refresh_token)
        assert await auth_service.login("person@example.com", NEW_PASSWORD)

    async def test_wrong_current_password(self, auth_service, memory_store, registered):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(registered.id, "Wrong!Passw0rd", NEW_PASSWORD)
        entry = memory_store.list_audit_logs(action=AuditAction.PASSWORD_CHANGED.value)[0]
        assert entry.success is False


class TestPasswordReset:
    async def test_unknown_email_returns_none(self, auth_service):
        assert await auth_service.request_password_reset("nobody@example.com") is None

    async def test_reset_token_is_single_use(self, auth_service, memory_store, registered):
        token = await auth_service.request_password_reset("person@example.com")
        assert memory_store.find_password_reset_token(token) is None  # only the hash is kept

        assert await auth_service.reset_password(token, NEW_PASSWORD) == registered.id
        with pytest.raises(InvalidTokenError) as excinfo:
            await auth_service.reset_password(token, "An0ther!Passw0rd")
        assert excinfo.value.status_code == 400
        assert await auth_service.login("person@example.com", NEW_PASSWORD)

    async def test_reset_revokes_sessions_and_clears_lock(
        self, auth_service, memory_store, registered
    ):
        session = await auth_service.login("person@example.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("person@example.com", "Wrong!Passw0rd")
        token = await auth_service.request_password_reset("person@example.com")
        await auth_service.reset_password(token, NEW_PASSWORD)

        with pytest.raises(TokenNotFoundOrInactiveError):
            await auth_service.sessions.refresh_tokens(session.tokens.refresh_token)
        assert await auth_service.login("person@example.com", NEW_PASSWORD)

    async def test_expired_reset_token(self, auth_service, registered, clock):
        token = await auth_service.request_password_reset("person@example.com")
        clock.advance(minutes=61)
        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(token, NEW_PASSWORD)

    async def test_weak_password_does_not_consume_token(self, auth_service, registered):
        token = await auth_service.request_password_reset("person@example.com")
        with pytest.raises(WeakInputError):
            await auth_service.reset_password(token, "weak")
        assert await auth_service.reset_password(token, NEW_PASSWORD) == registered.id


class TestLegacyDigests:
    async def test_argon2_digest_upgraded_on_login(self, auth_service, memory_store):
        user = memory_store.create_user("legacy@example.com")
        memory_store.save_password(user.id, PasswordHasher().hash("Legacy-Pass-1"), LEGACY_ARGON2_ALGO)

        await auth_service.login("legacy@example.com", "Legacy-Pass-1")
        assert memory_store.get_password_record(user.id)[1] == PBKDF2_ALGO
        assert await auth_service.login("legacy@example.com", "Legacy-Pass-1")

    async def test_short_legacy_password_keeps_old_digest(self, auth_service, memory_store):
        user = memory_store.create_user("old@example.com")
        memory_store.save_password(user.id, PasswordHasher().hash("abc"), LEGACY_ARGON2_ALGO)

        assert await auth_service.login("old@example.com", "abc")
        assert memory_store.get_password_record(user.id)[1] == LEGACY_ARGON2_ALGO
