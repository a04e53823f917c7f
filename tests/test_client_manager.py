"""Tests for the client-side token manager against a mocked API."""

import asyncio
import json
import time

import httpx
import pytest

from authgate.service.client import TokenClient
from authgate.service.tokens import TokenCodec

BASE_URL = "http://api.test"


def _codec(issued_at: float) -> TokenCodec:
    return TokenCodec(
        "client-access-secret-0123456789abcdef",
        "client-refresh-secret-0123456789abcdef",
        clock=lambda: issued_at,
    )


def fresh_access(role: str = "user") -> str:
    return _codec(time.time()).sign_access("user-1", "client@example.com", role)


def stale_access() -> str:
    return _codec(time.time() - 3600).sign_access("user-1", "client@example.com", "user")


def refresh_token() -> str:
    return _codec(time.time()).sign_refresh()


def _envelope(data: dict, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json={"status": "ok", "data": data})


class FakeApi:
    """Records calls; /v1/auth/refresh hands out a new pair each time."""

    def __init__(self, *, refresh_status: int = 200):
        self.refresh_status = refresh_status
        self.calls = []
        self.issued = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path, request.headers.get("authorization")))
        if request.url.path == "/v1/auth/refresh":
            await asyncio.sleep(0.01)
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"status": "error"})
            access = fresh_access()
            self.issued.append(access)
            return _envelope({"access_token": access, "refresh_token": refresh_token(), "expires_in": 900})
        if request.url.path == "/v1/auth/login":
            body = json.loads(request.content)
            assert body["email"] == "client@example.com"
            return _envelope({"access_token": fresh_access(), "refresh_token": refresh_token()})
        if request.url.path == "/v1/auth/logout":
            return _envelope({"revoked": 1})
        if request.url.path == "/v1/me":
            expected = f"Bearer {self.issued[-1]}" if self.issued else None
            if request.headers.get("authorization") != expected:
                return httpx.Response(401, json={"status": "error"})
            return _envelope({"id": "user-1"})
        return httpx.Response(404)

    def count(self, path: str) -> int:
        return sum(1 for _, call_path, _ in self.calls if call_path == path)


@pytest.fixture
def api():
    return FakeApi()


def make_client(api: FakeApi) -> TokenClient:
    return TokenClient(BASE_URL, transport=httpx.MockTransport(api))


class TestDecoding:
    async def test_current_user_and_admin(self, api):
        async with make_client(api) as client:
            client.set_tokens(fresh_access(role="admin"))
            assert client.current_user() == {"id": "user-1", "email": "client@example.com", "role": "admin"}
            assert client.is_admin()
            assert client.is_authenticated()

    async def test_stale_token_is_expired(self, api):
        async with make_client(api) as client:
            client.set_tokens(stale_access())
            assert client.decode_token(client.access_token) is None
            assert client.is_token_expired(client.access_token)
            assert not client.is_authenticated()

    async def test_garbage_token(self, api):
        async with make_client(api) as client:
            assert client.decode_token("not.a.token") is None
            assert client.is_token_expired("garbage")


class TestRefresh:
    async def test_concurrent_callers_share_one_refresh(self, api):
        async with make_client(api) as client:
            client.set_tokens(stale_access(), refresh_token())
            tokens = await asyncio.gather(*(client.get_valid_access_token() for _ in range(5)))
            assert api.count("/v1/auth/refresh") == 1
            assert set(tokens) == {api.issued[0]}
            assert client.access_token == api.issued[0]

    async def test_valid_token_needs_no_refresh(self, api):
        async with make_client(api) as client:
            token = fresh_access()
            client.set_tokens(token, refresh_token())
            assert await client.get_valid_access_token() == token
            assert api.calls == []

    async def test_no_tokens_means_no_request(self, api):
        async with make_client(api) as client:
            assert await client.get_valid_access_token() is None
            assert api.calls == []

    async def test_failed_refresh_clears_tokens(self):
        api = FakeApi(refresh_status=401)
        async with make_client(api) as client:
            client.set_tokens(stale_access(), refresh_token())
            assert await client.get_valid_access_token() is None
            assert client.access_token is None
            assert client.refresh_token is None

    @pytest.mark.parametrize("data", ["token-string", ["a", "b"], 42])
    async def test_refresh_with_non_object_data(self, data):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "ok", "data": data})

        async with TokenClient(BASE_URL, transport=httpx.MockTransport(handler)) as client:
            client.set_tokens(stale_access(), refresh_token())
            assert await client.get_valid_access_token() is None
            assert client.refresh_token is None

    async def test_sequential_refreshes_are_separate_requests(self, api):
        async with make_client(api) as client:
            client.set_tokens(stale_access(), refresh_token())
            await client.refresh_access_token()
            await client.refresh_access_token()
            assert api.count("/v1/auth/refresh") == 2


class TestFetchWithAuth:
    async def test_retries_once_after_401(self, api):
        async with make_client(api) as client:
            # Looks valid locally but the server no longer accepts it
            client.set_tokens(fresh_access(), refresh_token())
            response = await client.fetch_with_auth("GET", "/v1/me")
            assert response.status_code == 200
            assert api.count("/v1/me") == 2
            assert api.count("/v1/auth/refresh") == 1

    async def test_gives_up_when_refresh_fails(self):
        api = FakeApi(refresh_status=401)
        async with make_client(api) as client:
            client.set_tokens(fresh_access(), refresh_token())
            response = await client.fetch_with_auth("GET", "/v1/me")
            assert response.status_code == 401
            assert api.count("/v1/me") == 1
            assert client.access_token is None


class TestSession:
    async def test_login_then_logout(self, api):
        async with make_client(api) as client:
            await client.login("client@example.com", "Str0ng!Passw0rd")
            assert client.is_authenticated()
            presented = client.refresh_token

            await client.logout()
            assert client.access_token is None
            assert client.refresh_token is None
            assert api.count("/v1/auth/logout") == 1
            assert presented
