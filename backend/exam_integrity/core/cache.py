import redis
import redis.asyncio as aioredis
import logging
from typing import Optional
from exam_integrity.core.config import settings

logger = logging.getLogger(__name__)


class CacheManager:
    """Redis access shared by the distributed rate-limit store and health checks"""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url

        self._sync_client = None
        self._async_client = None

    @property
    def sync_client(self) -> redis.Redis:
        """Get synchronous Redis client"""
        if self._sync_client is None:
            self._sync_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True
            )
        return self._sync_client

    async def get_async_client(self) -> aioredis.Redis:
        """Get asynchronous Redis client"""
        if self._async_client is None:
            try:
                self._async_client = aioredis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
                await self._async_client.ping()
            except Exception as e:
                logger.error(f"Failed to create async Redis client: {e}")
                self._async_client = None
                raise
        return self._async_client

    def health_check(self) -> bool:
        try:
            return self.sync_client.ping()
        except Exception:
            return False

    async def ahealth_check(self) -> bool:
        try:
            client = await self.get_async_client()
            return await client.ping()
        except Exception as e:
            logger.warning(f"Cache health check failed: {e}")
            return False

    async def close(self) -> None:
        if self._async_client is not None:
            await self._async_client.close()
            self._async_client = None
        if self._sync_client is not None:
            self._sync_client.close()
            self._sync_client = None


cache = CacheManager()
