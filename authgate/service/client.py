"""Client-side token manager for services and scripts that call the API.

Construct one ``TokenClient`` per logical session and pass it around; there
is no module-level instance. Refreshes are single-flight: concurrent callers
that find the access token stale all await the same refresh request, so a
single-use refresh token is never presented twice.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from authgate.logging import get_logger
from authgate.service.tokens import decode_unverified

logger = get_logger(__name__)

DEFAULT_EXPIRY_BUFFER_SECONDS = 60


@dataclass
class ClientTokens:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


class TokenClient:
    def __init__(
        self,
        base_url: str = "",
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        refresh_path: str = "/v1/auth/refresh",
        login_path: str = "/v1/auth/login",
        logout_path: str = "/v1/auth/logout",
        expiry_buffer: int = DEFAULT_EXPIRY_BUFFER_SECONDS,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(
            base_url=base_url, transport=transport, timeout=timeout
        )
        self.refresh_path = refresh_path
        self.login_path = login_path
        self.logout_path = logout_path
        self.expiry_buffer = expiry_buffer
        self._clock = clock
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self._refresh_task: Optional[asyncio.Future] = None

    async def __aenter__(self) -> "TokenClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # token state
    def set_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        self.access_token = access_token
        if refresh_token is not None:
            self.refresh_token = refresh_token

    def clear_tokens(self) -> None:
        self.access_token = None
        self.refresh_token = None

    def decode_token(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Claims for display only. The signature is not checked; never authorize on this."""
        if not token:
            return None
        payload = decode_unverified(token)
        if payload is None:
            return None
        exp = payload.get("exp")
        if isinstance(exp, (int, float)) and exp < self._clock():
            return None
        return payload

    def is_token_expired(self, token: Optional[str], buffer: Optional[int] = None) -> bool:
        payload = self.decode_token(token)
        if not payload or not isinstance(payload.get("exp"), (int, float)):
            return True
        margin = self.expiry_buffer if buffer is None else buffer
        return payload["exp"] <= self._clock() + margin

    def current_user(self) -> Optional[Dict[str, str]]:
        payload = self.decode_token(self.access_token)
        if not payload:
            return None
        return {"id": payload.get("userId"), "email": payload.get("email"), "role": payload.get("role")}

    def is_authenticated(self) -> bool:
        return self.access_token is not None and not self.is_token_expired(self.access_token)

    def is_admin(self) -> bool:
        user = self.current_user()
        return bool(user and user.get("role") == "admin")

    # refresh
    async def refresh_access_token(self) -> Optional[ClientTokens]:
        if self._refresh_task is None:
            task = asyncio.ensure_future(self._perform_refresh())
            task.add_done_callback(self._clear_refresh_task)
            self._refresh_task = task
        # shield: one cancelled waiter must not cancel the refresh for the others
        return await asyncio.shield(self._refresh_task)

    def _clear_refresh_task(self, task: asyncio.Future) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _perform_refresh(self) -> Optional[ClientTokens]:
        body = {"refresh_token": self.refresh_token} if self.refresh_token else {}
        try:
            response = await self.http.post(self.refresh_path, json=body)
        except httpx.HTTPError as exc:
            logger.warning("client_token_refresh_failed", error=str(exc))
            self.clear_tokens()
            return None
        if response.status_code != 200:
            logger.info("client_token_refresh_rejected", status_code=response.status_code)
            self.clear_tokens()
            return None
        tokens = self._tokens_from_response(response)
        if tokens is None:
            logger.warning("client_token_refresh_malformed")
            self.clear_tokens()
            return None
        self.set_tokens(tokens.access_token, tokens.refresh_token)
        return tokens

    @staticmethod
    def _tokens_from_response(response: httpx.Response) -> Optional[ClientTokens]:
        try:
            data = response.json().get("data")
        except (ValueError, AttributeError):
            return None
        if not isinstance(data, dict):
            return None
        access_token = data.get("access_token")
        if not access_token:
            return None
        return ClientTokens(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
        )

    async def get_valid_access_token(self) -> Optional[str]:
        if self.access_token and not self.is_token_expired(self.access_token):
            return self.access_token
        if not self.access_token and not self.refresh_token:
            return None
        tokens = await self.refresh_access_token()
        return tokens.access_token if tokens else None

    async def fetch_with_auth(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request, refreshing and retrying once on 401."""
        token = await self.get_valid_access_token()
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        response = await self.http.request(method, url, headers=headers, **kwargs)
        if response.status_code != 401 or not token:
            return response

        if self.access_token and self.access_token != token:
            # Another caller already refreshed while this request was in flight
            new_token: Optional[str] = self.access_token
        else:
            tokens = await self.refresh_access_token()
            new_token = tokens.access_token if tokens else None
        if not new_token:
            return response
        headers["Authorization"] = f"Bearer {new_token}"
        return await self.http.request(method, url, headers=headers, **kwargs)

    # session helpers
    async def login(self, email: str, password: str, *, remember_me: bool = False) -> ClientTokens:
        response = await self.http.post(
            self.login_path,
            json={"email": email, "password": password, "remember_me": remember_me},
        )
        response.raise_for_status()
        tokens = self._tokens_from_response(response)
        if tokens is None:
            raise ValueError("login response did not include tokens")
        self.set_tokens(tokens.access_token, tokens.refresh_token)
        return tokens

    async def logout(self) -> None:
        """Revoke the refresh token server-side; local tokens are dropped regardless."""
        headers = {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}
        try:
            if self.refresh_token:
                await self.http.post(
                    self.logout_path, json={"refresh_token": self.refresh_token}, headers=headers
                )
        except httpx.HTTPError as exc:
            logger.warning("client_logout_failed", error=str(exc))
        finally:
            self.clear_tokens()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()
