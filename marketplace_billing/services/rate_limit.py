"""
Rate Limiter - Fixed-window request budgets in Redis.

A single Lua script increments the window counter and starts its TTL on the
first hit, so concurrent requests across API workers count atomically.
"""

from dataclasses import dataclass

import redis.asyncio as aioredis
from structlog import get_logger

logger = get_logger(__name__)

# KEYS[1] = counter key, ARGV[1] = window seconds. Returns {count, ttl}.
_INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of counting one request against a window."""

    allowed: bool
    count: int
    retry_after_seconds: int


class FixedWindowRateLimiter:
    """At most ``max_requests`` per ``window_seconds`` for each identifier."""

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        scope: str,
        max_requests: int,
        window_seconds: int,
    ) -> None:
        self.client = client
        self.scope = scope
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._script = client.register_script(_INCREMENT_SCRIPT)

    def _key(self, identifier: str) -> str:
        return f"ratelimit:{self.scope}:{identifier}"

    async def hit(self, identifier: str) -> RateLimitDecision:
        """Count a request and report whether it fits in the current window."""
        count, ttl = await self._script(keys=[self._key(identifier)], args=[self.window_seconds])
        count, ttl = int(count), int(ttl)
        allowed = count <= self.max_requests
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                scope=self.scope,
                identifier=identifier,
                count=count,
                limit=self.max_requests,
                retry_after=ttl,
            )
        return RateLimitDecision(allowed=allowed, count=count, retry_after_seconds=max(ttl, 1))

    async def reset(self, identifier: str) -> None:
        await self.client.delete(self._key(identifier))
