"""
Reconciliation Scheduler (timer-driven).

Responsibilities:
- Every tick, walk the pending-media index and check each placeholder's converted artifact
- Attach media (url/contentType/index) once the artifact exists, in one conditional write
- Claim, then deliver, each freshly resolved voice note exactly once at most
- Move placeholders past the retry ceiling to a terminal failed state

IMPORTANT:
- Ticks never overlap: a process-local guard plus an optional Redis lease
  (multi-instance deployments) make each tick single-active. The lease is
  renewed while a tick runs.
- An attached voice note stays in the index until its delivery is claimed (or
  found unconfigured), so a tick that dies after attach is resumed next tick.
- Every failure is isolated to the message being processed; a tick never aborts
  because one message failed.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from src.voicenotes.audio.paths import to_converted_path
from src.voicenotes.config.settings import settings
from src.voicenotes.dispatchers.delivery_adapter import DeliveryAdapter
from src.voicenotes.errors import ArtifactNotYetReady, PendingMediaExpired
from src.voicenotes.infra.media_storage import LocalMediaStorage, MediaStorage
from src.voicenotes.infra.redis.client import RedisClient
from src.voicenotes.infra.redis.run_lock import RedisRunLock
from src.voicenotes.logging.logger import setup_logger
from src.voicenotes.store.conversation_store import ConversationStore, create_conversation_store
from src.voicenotes.store.models import MediaItem, Message, MessageRef, TenantCredentials

logger = setup_logger(__name__)


class ReconcileResult(str, Enum):
    NOT_PENDING = "not_pending"
    NOT_READY = "not_ready"
    EXPIRED = "expired"
    ATTACHED = "attached"  # attached, no delivery configured
    ALREADY_RESOLVED = "already_resolved"
    CLAIM_LOST = "claim_lost"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    ERROR = "error"


@dataclass
class TickReport:
    skipped: bool = False
    results: Counter = field(default_factory=Counter)

    @property
    def processed(self) -> int:
        return sum(self.results.values())


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationScheduler:
    def __init__(
        self,
        *,
        store: ConversationStore,
        storage: MediaStorage,
        delivery: DeliveryAdapter,
        run_lock: Optional[RedisRunLock] = None,
        worker_id: Optional[str] = None,
        max_concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        max_age_seconds: Optional[int] = None,
        canonical_content_type: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.delivery = delivery
        self.run_lock = run_lock
        self.worker_id = worker_id or f"{settings.reconcile_worker_id}:{uuid.uuid4().hex[:8]}"
        self.max_concurrency = max(1, max_concurrency or settings.reconcile_max_concurrency)
        self.max_attempts = settings.pending_max_attempts if max_attempts is None else max_attempts
        self.max_age_seconds = settings.pending_max_age_seconds if max_age_seconds is None else max_age_seconds
        self.canonical_content_type = canonical_content_type or settings.voice_note_content_type
        self.clock = clock or _default_clock
        self._tick_lock = asyncio.Lock()

    # ---- tick ---------------------------------------------------------------

    async def run_once(self) -> TickReport:
        """
        One reconciliation pass. Returns a skipped report when another tick holds the guard.
        """
        if self._tick_lock.locked():
            logger.warning("Reconcile tick skipped; previous tick still running | worker=%s", self.worker_id)
            return TickReport(skipped=True)

        async with self._tick_lock:
            if self.run_lock is None:
                return await self._reconcile_all()

            try:
                acquired = await self.run_lock.acquire()
            except Exception as exc:
                logger.error("Reconcile run lock unavailable; skipping tick", exc_info=exc)
                return TickReport(skipped=True)
            if not acquired:
                return TickReport(skipped=True)

            renew_task = asyncio.create_task(self._renew_run_lock())
            try:
                return await self._reconcile_all()
            finally:
                renew_task.cancel()
                try:
                    await renew_task
                except asyncio.CancelledError:
                    pass
                try:
                    await self.run_lock.release()
                except Exception as exc:
                    logger.error("Failed to release reconcile run lock", exc_info=exc)

    async def _renew_run_lock(self) -> None:
        """Keep the lease alive for as long as the tick runs."""
        while True:
            await asyncio.sleep(self.run_lock.renew_interval_seconds)
            try:
                renewed = await self.run_lock.extend()
            except Exception as exc:
                logger.error("Failed to renew reconcile run lock", exc_info=exc)
                continue
            if not renewed:
                logger.error("Reconcile run lock lost mid-tick | worker=%s", self.worker_id)
                return

    async def _reconcile_all(self) -> TickReport:
        t_start = time.perf_counter()
        refs = await self.store.pending_refs()
        report = TickReport()
        if not refs:
            logger.debug("Reconcile tick | pending=0")
            return report

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _with_limit(ref: MessageRef) -> ReconcileResult:
            async with semaphore:
                return await self.reconcile_message(ref)

        results: List[ReconcileResult] = await asyncio.gather(*(_with_limit(ref) for ref in refs))
        report.results.update(results)

        logger.info(
            "Reconcile tick done | pending=%s | results=%s | elapsed_s=%.3f",
            len(refs),
            dict(report.results),
            time.perf_counter() - t_start,
        )
        return report

    # ---- per message --------------------------------------------------------

    async def reconcile_message(self, ref: MessageRef) -> ReconcileResult:
        try:
            return await self._reconcile_message(ref)
        except Exception as exc:
            logger.error("Reconcile failed for message | message=%s", ref.key, exc_info=exc)
            return ReconcileResult.ERROR

    async def _reconcile_message(self, ref: MessageRef) -> ReconcileResult:
        message = await self.store.get_message(ref)
        if message is not None and message.is_awaiting_delivery:
            return await self._resume_delivery(ref, message)
        if message is None or not message.is_awaiting_media:
            await self.store.drop_pending(ref)
            return ReconcileResult.NOT_PENDING

        pending_path = message.pending_media_path or ""
        try:
            converted_path = to_converted_path(pending_path)
        except ValueError:
            await self._expire(ref, pending_path, f"pending path is not a voice note: {pending_path}")
            return ReconcileResult.EXPIRED

        try:
            await self._require_artifact(converted_path)
        except ArtifactNotYetReady:
            return await self._not_ready(ref, pending_path)

        # Everything delivery needs is read before the attach write.
        target = await self._delivery_target(ref)
        url = await self.storage.signed_url(converted_path)
        content_type = await self.storage.content_type(converted_path) or self.canonical_content_type
        attached = await self.store.attach_media(
            ref,
            expected_pending_path=pending_path,
            media=MediaItem(url=url, content_type=content_type, index=0),
        )
        if not attached:
            logger.info("Message already resolved elsewhere | message=%s", ref.key)
            return ReconcileResult.ALREADY_RESOLVED

        logger.info("Voice note attached | message=%s | path=%s", ref.key, converted_path)
        return await self._deliver(ref, message, url, target)

    async def _resume_delivery(self, ref: MessageRef, message: Message) -> ReconcileResult:
        logger.info("Resuming delivery of attached voice note | message=%s", ref.key)
        target = await self._delivery_target(ref)
        return await self._deliver(ref, message, message.media[0]["url"], target)

    async def _require_artifact(self, converted_path: str) -> None:
        if not await self.storage.exists(converted_path):
            raise ArtifactNotYetReady(converted_path)

    async def _not_ready(self, ref: MessageRef, pending_path: str) -> ReconcileResult:
        updated = await self.store.record_pending_miss(ref, expected_pending_path=pending_path)
        if updated is None:
            return ReconcileResult.NOT_PENDING

        try:
            self._check_ceiling(updated)
        except PendingMediaExpired as exc:
            await self._expire(ref, pending_path, str(exc))
            return ReconcileResult.EXPIRED

        logger.debug(
            "Converted artifact not ready | message=%s | attempts=%s",
            ref.key,
            updated.pending_attempts,
        )
        return ReconcileResult.NOT_READY

    def _check_ceiling(self, message: Message) -> None:
        if self.max_attempts and message.pending_attempts >= self.max_attempts:
            raise PendingMediaExpired(f"converted audio not available after {message.pending_attempts} checks")
        if self.max_age_seconds and message.pending_since is not None:
            age = (self.clock() - message.pending_since).total_seconds()
            if age > self.max_age_seconds:
                raise PendingMediaExpired(f"converted audio not available after {int(age)}s")

    async def _expire(self, ref: MessageRef, pending_path: str, reason: str) -> None:
        logger.warning("Voice note pending past retry ceiling | message=%s | reason=%s", ref.key, reason)
        await self.store.fail_pending_media(ref, expected_pending_path=pending_path, reason=reason)

    async def _delivery_target(self, ref: MessageRef) -> Optional[Tuple[TenantCredentials, str]]:
        credentials = await self.store.get_credentials(ref.tenant_id)
        conversation = await self.store.get_conversation(ref.tenant_id, ref.conversation_id)
        recipient = conversation.customer_address if conversation else None

        if credentials is None or not recipient:
            logger.info(
                "Delivery not configured | message=%s | has_credentials=%s | has_recipient=%s",
                ref.key,
                credentials is not None,
                bool(recipient),
            )
            return None
        return credentials, recipient

    async def _deliver(
        self,
        ref: MessageRef,
        message: Message,
        media_url: str,
        target: Optional[Tuple[TenantCredentials, str]],
    ) -> ReconcileResult:
        if target is None:
            await self.store.drop_pending(ref)
            return ReconcileResult.ATTACHED

        credentials, recipient = target
        if not await self.store.claim_delivery(ref, worker_id=self.worker_id):
            logger.info("Delivery already claimed | message=%s", ref.key)
            await self.store.drop_pending(ref)
            return ReconcileResult.CLAIM_LOST

        outcome = await self.delivery.deliver(
            ref,
            credentials=credentials,
            recipient=recipient,
            media_url=media_url,
            body=message.body,
            worker_id=self.worker_id,
        )
        await self.store.drop_pending(ref)
        return ReconcileResult.DELIVERED if outcome.delivered else ReconcileResult.DELIVERY_FAILED

    # ---- loop ---------------------------------------------------------------

    async def run_forever(
        self,
        *,
        shutdown_event: asyncio.Event,
        interval_seconds: Optional[float] = None,
        rebuild_index: bool = True,
    ) -> None:
        """Execute reconciliation ticks until ``shutdown_event`` is signalled."""

        interval = max(0.01, float(interval_seconds or settings.reconcile_interval_seconds))

        if rebuild_index:
            try:
                found = await self.store.rebuild_pending_index()
                logger.info("Pending index rebuilt | pending=%s", found)
            except Exception as exc:
                logger.error("Pending index rebuild failed", exc_info=exc)

        logger.info("Reconciliation scheduler started | worker=%s | interval_s=%s", self.worker_id, interval)

        while not shutdown_event.is_set():
            t_start = time.monotonic()
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("Reconcile tick failed", exc_info=exc)

            wait_s = max(0.0, interval - (time.monotonic() - t_start))
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=wait_s)
            except asyncio.TimeoutError:
                continue

        logger.info("Reconciliation scheduler stopped | worker=%s", self.worker_id)


def build_scheduler() -> ReconciliationScheduler:
    if settings.conversation_store == "memory":
        # A process-local store would be empty here: placeholders are written by other processes.
        raise RuntimeError("Reconciliation scheduler needs a shared conversation store; set CONVERSATION_STORE=redis")

    store = create_conversation_store(settings.conversation_store)
    return ReconciliationScheduler(
        store=store,
        storage=LocalMediaStorage(),
        delivery=DeliveryAdapter(store),
        run_lock=RedisRunLock(RedisClient()),
    )


async def run_scheduler() -> None:
    """
    Script entrypoint for running the reconciliation loop.
    """
    scheduler = build_scheduler()
    await scheduler.run_forever(shutdown_event=asyncio.Event())


if __name__ == "__main__":
    asyncio.run(run_scheduler())
