"""
Redis connection shared by the session store and the health check.
"""
import redis.asyncio as redis

from classvote.config import settings


class RedisClient:
    """Lazily created async Redis connection pool."""

    def __init__(self, url: str | None = None):
        self._url = url or settings.redis_url
        self._client: redis.Redis | None = None

    async def get_client(self) -> redis.Redis:
        """Get or create Redis connection with connection pooling."""
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=50,
                socket_connect_timeout=5,
                socket_keepalive=True,
            )
        return self._client

    async def close(self):
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None


# Singleton instance
redis_client = RedisClient()
