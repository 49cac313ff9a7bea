"""
Redis connection used for leader election, with retry logic.
"""
import asyncio
from typing import Optional

import redis.asyncio as redis

from memcached_operator.config.settings import settings
from memcached_operator.config.logging import get_logger

logger = get_logger(__name__)


class RedisConnection:
    """Redis connection manager with retry logic."""

    client: Optional[redis.Redis] = None

    @classmethod
    async def connect(cls) -> None:
        """
        Connect to Redis with retry logic.

        Retries settings.redis_connect_attempts times with exponential backoff (2s, 4s, 8s, 16s, 30s max).
        The connection is named after this replica so it shows in CLIENT LIST.
        """
        if not settings.redis_url:
            raise RuntimeError("redis_url must be set when leader election is enabled")

        max_attempts = settings.redis_connect_attempts
        base_delay = 2
        max_delay = 30
        safe_url = settings.redis_url.split("@")[-1]  # Log without credentials

        for attempt in range(1, max_attempts + 1):
            try:
                logger.info(
                    "connecting_to_redis",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    url=safe_url,
                )

                cls.client = redis.Redis.from_url(
                    settings.redis_url,
                    max_connections=settings.redis_max_connections,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    socket_keepalive=True,
                    retry_on_timeout=True,
                    health_check_interval=30,
                    client_name=f"{settings.app_name}:{settings.instance_id}",
                )

                await cls.client.ping()

                logger.info("redis_connected", client_name=f"{settings.app_name}:{settings.instance_id}")
                return

            except (redis.ConnectionError, redis.TimeoutError) as e:
                logger.error(
                    "redis_connection_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(e),
                    url=safe_url,
                )

                if attempt >= max_attempts:
                    logger.error("redis_max_retries_exceeded")
                    raise

                delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
                logger.info("retrying_redis", delay_seconds=delay)
                await asyncio.sleep(delay)

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls.client:
            logger.info("closing_redis_connection")
            await cls.client.aclose()
            cls.client = None
            logger.info("redis_connection_closed")

    @classmethod
    async def get_client(cls) -> redis.Redis:
        """
        Get Redis client instance.

        Raises:
            RuntimeError: If Redis is not connected
        """
        if cls.client is None:
            raise RuntimeError("Redis is not connected. Call connect() first.")
        return cls.client

    @classmethod
    async def ping(cls) -> bool:
        """Check Redis connectivity."""
        try:
            if cls.client:
                await cls.client.ping()
                return True
            return False
        except redis.RedisError as e:
            logger.error("redis_ping_failed", error=str(e))
            return False
