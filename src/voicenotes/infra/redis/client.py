"""
Shared redis.asyncio connection for the stream publisher, the transcode worker,
the Redis conversation store and the reconcile run lock.
"""

from __future__ import annotations

import redis.asyncio as redis
from typing import Optional

from src.voicenotes.config.settings import settings
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)


class RedisClient:
    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        # An injected client (e.g. a test double) is used as-is, without a ping.
        self._client: Optional[redis.Redis] = client

    async def connect(self) -> redis.Redis:
        if self._client:
            return self._client

        logger.info(
            "Connecting to Redis | host=%s | port=%s | db=%s",
            settings.redis_host,
            settings.redis_port,
            settings.redis_db,
        )

        self._client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            decode_responses=True,  # stream fields and JSON documents come back as str
        )

        try:
            await self._client.ping()
            logger.info("Redis connection established")
        except Exception as exc:
            logger.error("Failed to connect to Redis", exc_info=exc)
            self._client = None
            raise

        return self._client

    async def get_client(self) -> redis.Redis:
        if not self._client:
            await self.connect()
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
