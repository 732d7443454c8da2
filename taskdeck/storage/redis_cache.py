from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

DENYLIST_KEY_PREFIX = "auth:access:denylist:"


class RedisCache:
    """Thin Redis wrapper for the access-token denylist."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add an access token JTI to the denylist until the token would expire anyway."""
        if ttl_seconds > 0:
            await self.client.set(f"{DENYLIST_KEY_PREFIX}{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"{DENYLIST_KEY_PREFIX}{jti}"))

    async def close(self) -> None:
        await self.client.aclose()
