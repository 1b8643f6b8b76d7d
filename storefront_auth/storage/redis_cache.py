from __future__ import annotations

import hashlib
import time
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed ephemeral store shared by every service instance."""

    # Sliding-window log: one sorted-set member per accepted attempt, scored
    # by its timestamp in milliseconds. Rejected attempts are not recorded.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = math.ceil((tonumber(oldest[2]) + window - now) / 1000)
  return {0, 0, math.max(retry_after, 1)}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, limit - count - 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _window_key(key: str) -> str:
        """Hash caller keys so identifiers cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"ratelimit:{digest}"

    @staticmethod
    def _revoked_key(jti: str) -> str:
        return f"auth:refresh:revoked:{jti}"

    @staticmethod
    def _window_args(window_seconds: int, limit: int) -> list:
        now_ms = int(time.time() * 1000)
        return [now_ms, window_seconds * 1000, limit, f"{now_ms}-{uuid.uuid4().hex}"]

    @staticmethod
    def _window_result(raw) -> Tuple[bool, int, int]:
        allowed, remaining, retry_after = raw
        return bool(int(allowed)), max(0, int(remaining)), int(retry_after)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        raw = await self._sliding_window(
            keys=[self._window_key(key)], args=self._window_args(window_seconds, limit)
        )
        return self._window_result(raw)

    async def reset_window(self, key: str) -> None:
        await self.client.delete(self._window_key(key))

    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(self._revoked_key(jti), "1", ex=ttl_seconds)

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(self._revoked_key(jti)))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable interface as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def hit_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        raw = self._sliding_window(
            keys=[RedisCache._window_key(key)],
            args=RedisCache._window_args(window_seconds, limit),
        )
        return RedisCache._window_result(raw)

    async def reset_window(self, key: str) -> None:
        self.client.delete(RedisCache._window_key(key))

    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(RedisCache._revoked_key(jti), "1", ex=ttl_seconds)

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(self.client.exists(RedisCache._revoked_key(jti)))

    async def close(self) -> None:
        self.client.close()
