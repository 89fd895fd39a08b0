"""
Redis Stream publisher (storage events).

Responsibilities:
- Publish "storage object finalized" events to a Redis Stream
- Log publish lifecycle clearly

NOTE:
- This module does NOT transcode anything.
- It only appends events to a Redis Stream.
"""

from __future__ import annotations

from datetime import datetime, timezone

from src.voicenotes.contracts.storage_event import StorageObjectEvent
from src.voicenotes.infra.redis.client import RedisClient
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)


class RedisStreamPublisher:
    """
    Publishes storage events to a Redis Stream.
    """

    def __init__(self, redis_client: RedisClient, stream_name: str) -> None:
        self.redis_client = redis_client
        self.stream_name = stream_name

    async def publish_storage_event(self, event: StorageObjectEvent) -> str:
        """
        Returns:
            stream_id (str): Redis-generated stream entry ID
        """
        client = await self.redis_client.get_client()

        payload = event.to_stream_fields()
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()

        logger.info(
            "Publishing storage event | stream=%s | path=%s | content_type=%s",
            self.stream_name,
            event.path,
            event.content_type,
        )

        try:
            stream_id = await client.xadd(name=self.stream_name, fields=payload)
        except Exception as exc:
            logger.error("Failed to publish storage event", exc_info=exc)
            raise

        logger.debug("Storage event published | stream=%s | stream_id=%s", self.stream_name, stream_id)
        return stream_id
