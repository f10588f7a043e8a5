from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Lua token bucket: atomic refill + consume
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

# Login IP guard: block check, fixed-window count and escalating block in one step.
# KEYS: block, window, strikes
# ARGV: threshold, window_seconds, base_block_seconds, max_block_seconds, strike_ttl
_IP_ATTEMPT_SCRIPT = """
local remaining = redis.call('TTL', KEYS[1])
if remaining > 0 then
  return {0, remaining, -1}
end

local count = redis.call('INCR', KEYS[2])
if count == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if count > tonumber(ARGV[1]) then
  local strikes = redis.call('INCR', KEYS[3])
  redis.call('EXPIRE', KEYS[3], ARGV[5])
  local duration = math.floor(math.min(tonumber(ARGV[3]) * 2 ^ (strikes - 1), tonumber(ARGV[4])))
  redis.call('SET', KEYS[1], '1', 'EX', duration)
  return {0, duration, count}
end

return {1, 0, count}
"""

# Failed MFA attempts: check lockout, increment, trigger lockout.
_MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
  redis.call('DEL', KEYS[2])
  return {1, attempts}
end

return {0, attempts}
"""


def _ip_keys(ip: str) -> list[str]:
    return [f"ipguard:block:{ip}", f"ipguard:window:{ip}", f"ipguard:strikes:{ip}"]


def _mfa_keys(user_id: str) -> list[str]:
    return [f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"]


def _normalize_rate_key(key: str) -> str:
    """Hash rate-limit subjects so delimiters in IPs or emails cannot collide."""
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


class RedisCache:
    """Thin Redis wrapper for login guard counters and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._ip_attempt = self.client.register_script(_IP_ATTEMPT_SCRIPT)
        self._mfa_attempt = self.client.register_script(_MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket check executed atomically in a Lua script."""
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def ip_attempt(
        self,
        ip: str,
        *,
        threshold: int,
        window_seconds: int,
        base_block_seconds: int,
        max_block_seconds: int,
        strike_ttl_seconds: int,
    ) -> tuple[bool, int, int]:
        """Count one login attempt for ``ip``.

        Returns ``(allowed, block_seconds, count)``; ``count`` is -1 when the
        IP was already blocked and nothing was counted.
        """
        allowed, block_seconds, count = await self._ip_attempt(
            keys=_ip_keys(ip),
            args=[threshold, window_seconds, base_block_seconds, max_block_seconds, strike_ttl_seconds],
        )
        return bool(int(allowed)), int(block_seconds), int(count)

    async def ip_block_ttl(self, ip: str) -> int:
        ttl = await self.client.ttl(_ip_keys(ip)[0])
        return max(0, int(ttl))

    async def ip_block(self, ip: str, seconds: int) -> None:
        await self.client.set(_ip_keys(ip)[0], "1", ex=max(1, int(seconds)))

    async def ip_unblock(self, ip: str) -> None:
        await self.client.delete(*_ip_keys(ip))

    async def check_mfa_lockout(self, user_id: str) -> int:
        """Seconds left on an MFA lockout, 0 when not locked."""
        ttl = await self.client.ttl(_mfa_keys(user_id)[0])
        return max(0, int(ttl))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed MFA attempt; returns ``(locked_out, attempts)``."""
        result = await self._mfa_attempt(
            keys=_mfa_keys(user_id), args=[max_attempts, lockout_seconds]
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(_mfa_keys(user_id)[1])

    async def consume_once(self, key: str, ttl_seconds: int) -> bool:
        """Claim ``key`` exactly once; False if it was already claimed."""
        claimed = await self.client.set(
            f"once:{key}", "1", ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(claimed)

    async def release_once(self, key: str) -> None:
        await self.client.delete(f"once:{key}")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest while exposing the same awaitable API as ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._ip_attempt = self._sync_client.register_script(_IP_ATTEMPT_SCRIPT)
        self._mfa_attempt = self._sync_client.register_script(_MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def ip_attempt(
        self,
        ip: str,
        *,
        threshold: int,
        window_seconds: int,
        base_block_seconds: int,
        max_block_seconds: int,
        strike_ttl_seconds: int,
    ) -> tuple[bool, int, int]:
        allowed, block_seconds, count = self._ip_attempt(
            keys=_ip_keys(ip),
            args=[threshold, window_seconds, base_block_seconds, max_block_seconds, strike_ttl_seconds],
        )
        return bool(int(allowed)), int(block_seconds), int(count)

    async def ip_block_ttl(self, ip: str) -> int:
        return max(0, int(self._sync_client.ttl(_ip_keys(ip)[0])))

    async def ip_block(self, ip: str, seconds: int) -> None:
        self._sync_client.set(_ip_keys(ip)[0], "1", ex=max(1, int(seconds)))

    async def ip_unblock(self, ip: str) -> None:
        self._sync_client.delete(*_ip_keys(ip))

    async def check_mfa_lockout(self, user_id: str) -> int:
        return max(0, int(self._sync_client.ttl(_mfa_keys(user_id)[0])))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        result = self._mfa_attempt(keys=_mfa_keys(user_id), args=[max_attempts, lockout_seconds])
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        self._sync_client.delete(_mfa_keys(user_id)[1])

    async def consume_once(self, key: str, ttl_seconds: int) -> bool:
        claimed = self._sync_client.set(
            f"once:{key}", "1", ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(claimed)

    async def release_once(self, key: str) -> None:
        self._sync_client.delete(f"once:{key}")

    async def close(self) -> None:
        self._sync_client.close()
