from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for shared rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    KEY_PREFIX = "rate:window:"

    # Fixed-window counter: reset on first hit or once reset_at has passed,
    # otherwise increment. Runs atomically on the server.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local identifier = ARGV[3]

local reset_at = tonumber(redis.call('HGET', key, 'reset_at'))
if reset_at == nil or now >= reset_at then
  reset_at = now + window
  redis.call('HSET', key, 'count', 1, 'reset_at', reset_at, 'identifier', identifier)
  redis.call('PEXPIRE', key, window)
  return {1, reset_at}
end

local count = redis.call('HINCRBY', key, 'count', 1)
return {count, reset_at}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the shared limiter."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @classmethod
    def _normalize_rate_key(cls, identifier: str) -> str:
        """Hash identifiers so caller-controlled text never shapes the key."""
        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"{cls.KEY_PREFIX}{digest}"

    async def incr_fixed_window(
        self, identifier: str, window_ms: int, now_ms: int
    ) -> Tuple[int, int]:
        """Count one hit; returns ``(count, reset_at_ms)`` for the current window."""
        count, reset_at = await self._fixed_window(
            keys=[self._normalize_rate_key(identifier)],
            args=[now_ms, window_ms, identifier],
        )
        return int(count), int(reset_at)

    async def _window_keys(self) -> List[str]:
        return [key async for key in self.client.scan_iter(match=f"{self.KEY_PREFIX}*")]

    async def list_windows(self) -> List[Dict[str, Any]]:
        windows: List[Dict[str, Any]] = []
        for key in await self._window_keys():
            data = await self.client.hgetall(key)
            # Key may have expired between SCAN and HGETALL
            if not data:
                continue
            windows.append(
                {
                    "identifier": data.get("identifier", key),
                    "count": int(data.get("count", 0)),
                    "reset_at_ms": int(data.get("reset_at", 0)),
                }
            )
        return windows

    async def clear_windows(self) -> int:
        keys = await self._window_keys()
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
