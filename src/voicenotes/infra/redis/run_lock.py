"""
Redis-backed single-active-run lease.

Responsibilities:
- Let exactly one process/instance hold a named lease at a time
- Expire the lease on its own (TTL) if the holder dies mid-run
- Renew the lease while the holder is still working
- Release only if we still own it

NOTE:
- Built on redis-py's `Lock` (token-checked release and extend), taken non-blocking.
"""

from __future__ import annotations

from typing import Optional

from redis.asyncio.lock import Lock
from redis.exceptions import LockError, LockNotOwnedError

from src.voicenotes.config.settings import settings
from src.voicenotes.infra.redis.client import RedisClient
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)


class RedisRunLock:
    def __init__(
        self,
        redis_client: RedisClient,
        *,
        name: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self.redis_client = redis_client
        self.key = f"{settings.redis_key_prefix}:{name or settings.reconcile_lock_name}"
        self.ttl_seconds = ttl_seconds or settings.reconcile_lock_ttl_seconds
        self._lock: Optional[Lock] = None

    @property
    def renew_interval_seconds(self) -> float:
        return max(1.0, self.ttl_seconds / 3)

    async def acquire(self) -> bool:
        client = await self.redis_client.get_client()
        lock = client.lock(self.key, timeout=self.ttl_seconds, blocking=False)
        if not await lock.acquire():
            logger.info("Run lock busy | key=%s", self.key)
            return False
        self._lock = lock
        logger.debug("Run lock acquired | key=%s", self.key)
        return True

    async def extend(self) -> bool:
        """Reset the lease TTL. Returns False once the lease is no longer ours."""
        if self._lock is None:
            return False
        try:
            await self._lock.extend(self.ttl_seconds, replace_ttl=True)
        except LockNotOwnedError:
            logger.warning("Run lock lost before renewal | key=%s", self.key)
            return False
        return True

    async def release(self) -> None:
        lock, self._lock = self._lock, None
        if lock is None:
            return
        try:
            await lock.release()
        except LockNotOwnedError:
            logger.warning("Run lock lost before release | key=%s", self.key)
            return
        except LockError as exc:
            logger.warning("Run lock release failed | key=%s | error=%s", self.key, exc)
            return
        logger.debug("Run lock released | key=%s", self.key)
