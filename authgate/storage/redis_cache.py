from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume; returns {allowed, tokens_left, reset_after_seconds}
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, tokens, 0}
"""


def rate_key(key: str) -> str:
    """Hash the logical key so user-supplied parts (emails) cannot collide or leak."""
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _bucket_result(raw) -> Tuple[bool, int, int]:
    allowed, tokens, reset_after = raw
    return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)


class RedisCache:
    """Redis-backed token buckets shared by every worker process."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        raw = await self._token_bucket(
            keys=[rate_key(key)], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        return _bucket_result(raw)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same interface backed by a synchronous client.

    Used in test mode so the connection is never tied to an event loop that
    pytest tears down between tests.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        raw = self._token_bucket(
            keys=[rate_key(key)], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        return _bucket_result(raw)

    async def close(self) -> None:
        self.client.close()
