from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis

# One request takes one token. The bucket holds ``capacity`` tokens and refills
# at ``rate`` tokens per second. Replies {allowed, tokens_left, retry_after}.
_RATE_BUCKET_LUA = """
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local ts = tonumber(state[2]) or now
tokens = math.min(capacity, tokens + math.max(0, now - ts) * rate)
local allowed = 0
local retry_after = math.ceil((1 - tokens) / rate)
if tokens >= 1 then
  allowed = 1
  tokens = tokens - 1
  retry_after = 0
end
redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.max(math.ceil(capacity / rate), 1))
return {allowed, tostring(tokens), retry_after}
"""


class RedisCache:
    """Shared rate-limit buckets for login, signup, password and 2FA calls."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_RATE_BUCKET_LUA)

    def verify_connection(self) -> None:
        """Ping once at startup with a sync client; raises when Redis is down."""
        from redis import Redis

        client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            client.ping()
        finally:
            client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # Keys embed emails; only a digest reaches Redis
        return "rate:" + hashlib.sha256(key.encode()).hexdigest()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed, tokens_left, retry_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), limit / window_seconds, limit],
        )
        allowed = bool(int(allowed))
        if not return_remaining:
            return allowed
        return allowed, max(0, int(float(tokens_left))), int(retry_after or 0)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()
