"""
Redis Stream transcode worker (execution runtime).

Responsibilities:
- Consume storage-finalized events from a Redis Stream using a consumer group
- Run the Transcode Dispatcher for each event with a controlled concurrency limit
- ACK every event once the dispatcher returns (it never raises; a failed transcode
  is left to the reconciliation scheduler's retry ceiling, not redelivered here)
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from src.voicenotes.audio.dispatcher import TranscodeDispatcher
from src.voicenotes.config.settings import settings
from src.voicenotes.contracts.storage_event import StorageObjectEvent
from src.voicenotes.infra.media_storage import LocalMediaStorage
from src.voicenotes.infra.redis.client import RedisClient
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)


class TranscodeWorker:
    """
    Consumes storage events from Redis Streams and dispatches transcodes concurrently.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        dispatcher: TranscodeDispatcher,
        *,
        stream_name: Optional[str] = None,
        group_name: Optional[str] = None,
        consumer_name: Optional[str] = None,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.redis_client = redis_client
        self.dispatcher = dispatcher
        self.stream_name = stream_name or settings.redis_stream_storage_events
        self.group_name = group_name or settings.redis_transcode_consumer_group
        self.consumer_name = consumer_name or settings.redis_transcode_consumer_name
        self.max_concurrency = max(1, max_concurrency or settings.transcode_max_concurrency)
        self.semaphore = asyncio.Semaphore(self.max_concurrency)
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        """
        Start the worker consume loop (runs forever).
        """
        client = await self.redis_client.get_client()
        await self.ensure_consumer_group(client)

        logger.info(
            "Transcode worker started | stream=%s | group=%s | consumer=%s | max_concurrency=%s",
            self.stream_name,
            self.group_name,
            self.consumer_name,
            self.max_concurrency,
        )

        while True:
            try:
                await self.consume_once(client)
            except Exception as exc:
                logger.error("Worker loop error", exc_info=exc)
                await asyncio.sleep(1)

    async def ensure_consumer_group(self, client) -> None:
        try:
            await client.xgroup_create(
                name=self.stream_name,
                groupname=self.group_name,
                id="0-0",
                mkstream=True,
            )
            logger.info("Redis consumer group created | stream=%s | group=%s", self.stream_name, self.group_name)
        except Exception as exc:
            if "BUSYGROUP" in str(exc):
                logger.debug(
                    "Redis consumer group already exists | stream=%s | group=%s",
                    self.stream_name,
                    self.group_name,
                )
            else:
                raise

    async def consume_once(self, client, *, block_ms: int = 5000) -> int:
        """
        Read a small batch and schedule concurrent processing tasks.

        Returns the number of events scheduled.
        """
        response = await client.xreadgroup(
            groupname=self.group_name,
            consumername=self.consumer_name,
            streams={self.stream_name: ">"},
            count=10,
            block=block_ms,
        )
        if not response:
            return 0

        scheduled = 0
        for _, messages in response:
            for stream_id, payload in messages:
                task = asyncio.create_task(self._process_with_limit(client, stream_id, payload))
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)
                scheduled += 1
        return scheduled

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Storage event task failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait for every in-flight event to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process_with_limit(self, client, stream_id: str, payload: Dict[str, str]) -> None:
        async with self.semaphore:
            await self.process_event(client, stream_id, payload)

    async def process_event(self, client, stream_id: str, payload: Dict[str, str]) -> None:
        event = StorageObjectEvent.from_notification(payload)
        try:
            outcome = await self.dispatcher.dispatch(event)
            logger.info("Storage event handled | stream_id=%s | path=%s | outcome=%s", stream_id, event.path, outcome.value)
        except Exception as exc:
            logger.error("Storage event failed | stream_id=%s | path=%s", stream_id, event.path, exc_info=exc)

        await client.xack(self.stream_name, self.group_name, stream_id)


async def run_worker() -> None:
    """
    Script entrypoint for running this worker process.
    """
    redis_client = RedisClient()
    worker = TranscodeWorker(
        redis_client=redis_client,
        dispatcher=TranscodeDispatcher(storage=LocalMediaStorage()),
    )
    try:
        await worker.start()
    finally:
        await redis_client.close()


if __name__ == "__main__":
    asyncio.run(run_worker())
