from __future__ import annotations

import hashlib
import json
import time
from typing import List, Optional, Tuple, Union

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for provider lists, rate limits and spend counters."""

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
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

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Atomic increment with expiry; returns the new total as a string
    _SPEND_SCRIPT = """
local total = redis.call('INCRBYFLOAT', KEYS[1], ARGV[1])
if redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return total
"""

    # Compare-and-increment; returns {reserved, total}
    _RESERVE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local amount = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
if current + amount > limit then
  return {0, tostring(current)}
end
local total = redis.call('INCRBYFLOAT', KEYS[1], ARGV[1])
if redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[3])
end
return {1, total}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._spend = self.client.register_script(self._SPEND_SCRIPT)
        self._reserve = self.client.register_script(self._RESERVE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so tenant ids cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def get_provider_list(self, account_id: Optional[str]) -> Optional[List[dict]]:
        cached = await self.client.get(self._provider_key(account_id))
        if not cached:
            return None
        try:
            payload = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry - treat as a miss
            return None
        return payload if isinstance(payload, list) else None

    async def set_provider_list(
        self, account_id: Optional[str], providers: List[dict], ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._provider_key(account_id), json.dumps(providers), ex=max(1, ttl_seconds)
        )

    async def invalidate_provider_lists(self, account_id: Optional[str] = None) -> None:
        if account_id is not None:
            await self.client.delete(self._provider_key(account_id))
            return
        keys = [key async for key in self.client.scan_iter(match="providers:*")]
        if keys:
            await self.client.delete(*keys)

    @staticmethod
    def _provider_key(account_id: Optional[str]) -> str:
        return f"providers:{account_id or '_global'}"

    async def add_spend(self, key: str, amount: float, ttl_seconds: int) -> float:
        total = await self._spend(keys=[f"spend:{key}"], args=[amount, ttl_seconds])
        return float(total)

    async def reserve_spend(
        self, key: str, amount: float, limit: float, ttl_seconds: int
    ) -> Tuple[bool, float]:
        """Add ``amount`` only if the total stays within ``limit``."""
        reserved, total = await self._reserve(
            keys=[f"spend:{key}"], args=[amount, limit, ttl_seconds]
        )
        return bool(int(reserved)), float(total)

    async def get_spend(self, key: str) -> float:
        value = await self.client.get(f"spend:{key}")
        return float(value) if value else 0.0

    async def close(self) -> None:
        await self.client.aclose()
