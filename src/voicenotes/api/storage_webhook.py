"""
Storage webhook (object finalized).

Responsibilities:
- Receive "object finalized" notifications from the storage backend
- Publish them to the storage-events Redis Stream
- Respond immediately; transcoding happens in the transcode worker

NOTE:
- No filtering here beyond a missing object name; the dispatcher owns the guards.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status

from src.voicenotes.config.settings import settings
from src.voicenotes.contracts.storage_event import StorageObjectEvent
from src.voicenotes.infra.redis import RedisClient, RedisStreamPublisher
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)

router = APIRouter()

_redis_client = RedisClient()


def get_storage_event_publisher() -> RedisStreamPublisher:
    return RedisStreamPublisher(
        redis_client=_redis_client,
        stream_name=settings.redis_stream_storage_events,
    )


@router.post("/webhooks/storage", status_code=status.HTTP_202_ACCEPTED)
async def storage_object_finalized(
    payload: Dict[str, Any] = Body(...),
    publisher: RedisStreamPublisher = Depends(get_storage_event_publisher),
) -> Dict[str, str]:
    event = StorageObjectEvent.from_notification(payload)
    if not event.path:
        logger.warning("Invalid storage notification received | payload=%s", payload)
        raise HTTPException(status_code=400, detail="Missing object name")

    stream_id = await publisher.publish_storage_event(event)
    logger.info("Storage notification queued | path=%s | stream_id=%s", event.path, stream_id)
    return {"status": "queued", "stream_id": stream_id}
