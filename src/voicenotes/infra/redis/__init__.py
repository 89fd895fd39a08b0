"""
Redis infrastructure package.

Contains:
- Redis connection wrapper
- Storage-event stream publisher
- Single-active-run lease used by the reconciliation scheduler
"""

from src.voicenotes.infra.redis.client import RedisClient
from src.voicenotes.infra.redis.run_lock import RedisRunLock
from src.voicenotes.infra.redis.stream_publisher import RedisStreamPublisher

__all__ = [
    "RedisClient",
    "RedisRunLock",
    "RedisStreamPublisher",
]
