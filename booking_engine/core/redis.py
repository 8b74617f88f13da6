import json
from typing import Any, Optional

import redis.asyncio as redis
import structlog

from booking_engine.core.config import settings

logger = structlog.get_logger(__name__)

# Delete the key only when it still holds the caller's token
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisClient:
    """Redis client for slot locks and realtime event publishing."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self.redis_pool = None

    async def init_redis(self):
        """Initialize Redis connection pool."""
        try:
            self.redis_pool = redis.ConnectionPool.from_url(
                self.url,
                decode_responses=True,
                retry_on_timeout=True,
                socket_keepalive=True,
                socket_keepalive_options={},
            )

            async with redis.Redis(connection_pool=self.redis_pool) as r:
                await r.ping()
                logger.info("Redis connection established", url=self.url)

        except Exception as e:
            logger.error("Failed to connect to Redis", exc_info=e)
            raise

    async def get_redis(self) -> redis.Redis:
        """Get Redis client instance."""
        if not self.redis_pool:
            await self.init_redis()
        return redis.Redis(connection_pool=self.redis_pool)

    async def acquire_lock(self, key: str, token: str, ttl_ms: int) -> bool:
        """Set ``key`` to ``token`` only if it is free. Returns True when acquired."""
        client = await self.get_redis()
        acquired = await client.set(key, token, nx=True, px=ttl_ms)
        return bool(acquired)

    async def release_lock(self, key: str, token: str) -> bool:
        """Release ``key`` if it is still held by ``token``."""
        try:
            client = await self.get_redis()
            result = await client.eval(_RELEASE_LOCK_SCRIPT, 1, key, token)
            return result == 1
        except Exception as e:
            # The TTL frees the key eventually
            logger.error("Redis lock release error", key=key, exc_info=e)
            return False

    async def publish(self, channel: str, message: Any) -> int:
        """Publish a JSON message on a pub/sub channel."""
        client = await self.get_redis()
        serialized = message if isinstance(message, str) else json.dumps(message)
        return await client.publish(channel, serialized)

    async def close(self):
        if self.redis_pool:
            await self.redis_pool.disconnect()
            self.redis_pool = None


# Global Redis client instance
redis_client = RedisClient()
