import fakeredis
import pytest

from src.voicenotes.contracts.storage_event import StorageObjectEvent
from src.voicenotes.infra.redis import RedisClient, RedisRunLock, RedisStreamPublisher

pytestmark = pytest.mark.asyncio


@pytest.fixture
def redis_client():
    return RedisClient(client=fakeredis.FakeAsyncRedis(decode_responses=True))


async def test_run_lock_is_single_holder(redis_client):
    first = RedisRunLock(redis_client, name="test:reconcile-lock", ttl_seconds=30)
    second = RedisRunLock(redis_client, name="test:reconcile-lock", ttl_seconds=30)

    assert await first.acquire() is True
    assert await second.acquire() is False

    await first.release()
    assert await second.acquire() is True
    await second.release()


async def test_run_lock_expires_on_its_own(redis_client):
    lock = RedisRunLock(redis_client, name="test:ttl-lock", ttl_seconds=30)
    await lock.acquire()

    client = await redis_client.get_client()
    ttl = await client.ttl(lock.key)
    assert 0 < ttl <= 30
    await lock.release()


async def test_release_never_deletes_someone_elses_lease(redis_client):
    lock = RedisRunLock(redis_client, name="test:stolen-lock", ttl_seconds=30)
    await lock.acquire()

    client = await redis_client.get_client()
    # The lease expired and another instance took it over.
    await client.set(lock.key, "other-holder")

    await lock.release()
    assert await client.get(lock.key) == "other-holder"


async def test_renewal_resets_the_lease_ttl(redis_client):
    lock = RedisRunLock(redis_client, name="test:renewed-lock", ttl_seconds=30)
    await lock.acquire()

    client = await redis_client.get_client()
    await client.expire(lock.key, 2)

    assert await lock.extend() is True
    assert await client.ttl(lock.key) > 2
    await lock.release()
    assert await client.exists(lock.key) == 0


async def test_renewal_reports_a_lost_lease(redis_client):
    lock = RedisRunLock(redis_client, name="test:lost-lock", ttl_seconds=30)
    await lock.acquire()

    client = await redis_client.get_client()
    await client.set(lock.key, "other-holder")

    assert await lock.extend() is False
    assert await client.get(lock.key) == "other-holder"


async def test_renewal_without_a_lease_is_refused(redis_client):
    lock = RedisRunLock(redis_client, name="test:idle-lock", ttl_seconds=30)

    assert await lock.extend() is False
    assert lock.renew_interval_seconds == 10


async def test_publisher_appends_storage_event(redis_client):
    publisher = RedisStreamPublisher(redis_client, "test:storage_events")
    event = StorageObjectEvent(path="acme/voice-notes/note1.webm", content_type="audio/webm", bucket="b")

    stream_id = await publisher.publish_storage_event(event)

    client = await redis_client.get_client()
    entries = await client.xrange("test:storage_events")
    assert [entry_id for entry_id, _ in entries] == [stream_id]
    fields = entries[0][1]
    assert fields["path"] == "acme/voice-notes/note1.webm"
    assert fields["content_type"] == "audio/webm"
    assert "timestamp" in fields
    assert StorageObjectEvent.from_notification(fields) == event
