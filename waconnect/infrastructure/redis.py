"""Redis client wrapper for the webhook fast-path dedupe cache."""

import logging

import redis.asyncio as aioredis

from waconnect.settings import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client wrapper for async operations.

    Every method is a no-op when Redis is disabled or unreachable; the
    database constraints stay authoritative.
    """

    def __init__(self) -> None:
        self._client: aioredis.Redis | None = None
        self._enabled: bool = settings.redis_enabled

    @property
    def enabled(self) -> bool:
        return self._enabled and self._client is not None

    async def connect(self) -> None:
        """Connect to Redis."""
        if not self._enabled:
            logger.info("Redis disabled - skipping connection")
            return
        if self._client is None:
            try:
                self._client = aioredis.from_url(
                    settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._client.ping()
                logger.info("Redis connected successfully")
            except Exception as e:
                logger.warning(f"Redis connection failed: {e}. Continuing without Redis.")
                self._client = None
                self._enabled = False

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def exists(self, key: str) -> bool:
        if not self.enabled:
            return False
        try:
            return await self._client.exists(key) > 0
        except aioredis.RedisError as e:
            logger.warning(f"Redis exists failed: {e}")
            return False

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """Set value in Redis.

        Returns:
            True if stored (or Redis disabled)
        """
        if not self.enabled:
            return True
        try:
            if ttl:
                return bool(await self._client.setex(key, ttl, value))
            return bool(await self._client.set(key, value))
        except aioredis.RedisError as e:
            logger.warning(f"Redis set failed: {e}")
            return False


def processed_message_key(tenant_id: int, message_id: str) -> str:
    return f"whatsapp:processed:{tenant_id}:{message_id}"


# Global Redis client instance
redis_client = RedisClient()
