# crm_sync/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from crm_sync.config import settings
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisQueueError(Exception):
    """Raised when a queue operation cannot reach Redis."""


class FastRedisClient:
    """Pooled Redis client backing the sync job queue"""

    def __init__(self, url: str | None = None):
        self.url = url or settings.REDIS_URL
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", url_preview=self.url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=20,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                # BRPOP blocks up to SYNC_QUEUE_POLL_SECONDS; keep the socket timeout above it
                socket_timeout=settings.SYNC_QUEUE_POLL_SECONDS + 10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Fast Redis client initialized successfully", max_connections=20)

        except redis.RedisError as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        if self.client:
            await self.client.aclose()
        if self.pool:
            await self.pool.disconnect()
        self._initialized = False
        logger.info("Fast Redis client closed")

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except (RuntimeError, redis.RedisError) as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def enqueue(self, queue_key: str, payload: str) -> int:
        """Push a payload onto the queue; returns the queue length."""
        try:
            await self._ensure_initialized()
            return int(await self.client.lpush(queue_key, payload))
        except (RuntimeError, redis.RedisError) as e:
            logger.error("Redis LPUSH failed", queue=queue_key, error=str(e))
            raise RedisQueueError(f"Could not enqueue onto {queue_key}: {e}") from e

    async def dequeue(self, queue_key: str, timeout: int) -> str | None:
        """Block up to `timeout` seconds for the oldest payload."""
        try:
            await self._ensure_initialized()
            item = await self.client.brpop([queue_key], timeout=timeout)
        except (RuntimeError, redis.RedisError) as e:
            logger.error("Redis BRPOP failed", queue=queue_key, error=str(e))
            raise RedisQueueError(f"Could not dequeue from {queue_key}: {e}") from e
        return item[1] if item else None

    async def queue_length(self, queue_key: str) -> int:
        await self._ensure_initialized()
        return int(await self.client.llen(queue_key))


# Global instance
fast_redis = FastRedisClient()
