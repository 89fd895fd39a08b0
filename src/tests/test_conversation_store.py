import fakeredis
import pytest
import pytest_asyncio

from src.tests.fakes import ACME_CREDENTIALS
from src.voicenotes.infra.redis.client import RedisClient
from src.voicenotes.store.conversation_store import (
    InMemoryConversationStore,
    clear_conversation_store_cache,
    create_conversation_store,
)
from src.voicenotes.store.models import (
    DELIVERY_CLAIMED,
    MEDIA_ATTACHED,
    MEDIA_FAILED,
    MEDIA_PENDING,
    MediaItem,
    MessageRef,
    build_placeholder_document,
)
from src.voicenotes.store.redis_store import RedisConversationStore

pytestmark = pytest.mark.asyncio

RAW_PATH = "acme/voice-notes/note1.webm"
MEDIA = MediaItem(url="https://media.example.test/media/acme/voice-notes/converted/note1.ogg", content_type="audio/ogg")


@pytest_asyncio.fixture(params=["memory", "redis"])
async def store(request):
    if request.param == "memory":
        yield InMemoryConversationStore()
        return
    fake = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield RedisConversationStore(RedisClient(client=fake), prefix="test")
    await fake.flushall()


async def _placeholder(store, path=RAW_PATH):
    await store.save_tenant("acme", credentials=ACME_CREDENTIALS)
    await store.save_conversation("acme", "conv-1", customer_address="+15551234567")
    return await store.create_voice_note_placeholder("acme", "conv-1", pending_media_path=path, body="hi")


async def test_tenant_credentials_round_trip(store):
    await store.save_tenant("acme", credentials=ACME_CREDENTIALS)
    await store.save_tenant("beta")

    assert await store.get_credentials("acme") == ACME_CREDENTIALS
    assert await store.get_credentials("beta") is None
    assert await store.get_credentials("unknown") is None
    assert set(await store.list_tenants()) == {"acme", "beta"}


async def test_placeholder_is_pending_and_indexed(store):
    ref = await _placeholder(store)

    message = await store.get_message(ref)
    assert message.pending_media_path == RAW_PATH
    assert message.media_state == MEDIA_PENDING
    assert message.has_media is False
    assert message.pending_since is not None
    assert await store.pending_refs() == [ref]
    assert [m.ref for m in await store.find_pending_messages("acme", "conv-1")] == [ref]


async def test_attach_media_is_conditional_on_pending_pointer(store):
    ref = await _placeholder(store)

    assert await store.attach_media(ref, expected_pending_path="acme/voice-notes/other.webm", media=MEDIA) is False
    assert await store.attach_media(ref, expected_pending_path=RAW_PATH, media=MEDIA) is True
    assert await store.attach_media(ref, expected_pending_path=RAW_PATH, media=MEDIA) is False

    message = await store.get_message(ref)
    assert message.pending_media_path is None
    assert message.has_media is True
    assert message.media_state == MEDIA_ATTACHED
    assert message.media == [{"url": MEDIA.url, "contentType": "audio/ogg", "index": 0}]
    assert message.is_awaiting_delivery is True
    # Still indexed until delivery is settled.
    assert await store.pending_refs() == [ref]

    assert await store.claim_delivery(ref, worker_id="w1") is True
    assert (await store.get_message(ref)).is_awaiting_delivery is False


async def test_pending_miss_counts_attempts_until_resolved(store):
    ref = await _placeholder(store)

    first = await store.record_pending_miss(ref, expected_pending_path=RAW_PATH)
    second = await store.record_pending_miss(ref, expected_pending_path=RAW_PATH)
    assert (first.pending_attempts, second.pending_attempts) == (1, 2)
    assert second.media == []

    await store.attach_media(ref, expected_pending_path=RAW_PATH, media=MEDIA)
    assert await store.record_pending_miss(ref, expected_pending_path=RAW_PATH) is None


async def test_fail_pending_media_is_terminal_and_visible(store):
    ref = await _placeholder(store)

    assert await store.fail_pending_media(ref, expected_pending_path=RAW_PATH, reason="gone") is True
    assert await store.fail_pending_media(ref, expected_pending_path=RAW_PATH, reason="gone") is False

    message = await store.get_message(ref)
    assert message.media_state == MEDIA_FAILED
    assert message.is_awaiting_media is False
    assert await store.pending_refs() == []
    assert await store.attach_media(ref, expected_pending_path=RAW_PATH, media=MEDIA) is False

    others = [m for m in await store.list_messages("acme", "conv-1") if m.ref != ref]
    assert [m.body for m in others] == ["Voice note could not be prepared for delivery: gone"]
    assert others[0].relates_to == ref.message_id


async def test_only_one_delivery_claim_wins(store):
    ref = await _placeholder(store)

    assert await store.claim_delivery(ref, worker_id="w1") is False  # no media yet
    await store.attach_media(ref, expected_pending_path=RAW_PATH, media=MEDIA)

    assert await store.claim_delivery(ref, worker_id="w1") is True
    assert await store.claim_delivery(ref, worker_id="w2") is False
    message = await store.get_message(ref)
    assert message.delivery_state == DELIVERY_CLAIMED
    assert message.delivery_claimed_by == "w1"

    assert await store.complete_delivery(ref, worker_id="w2", delivered=True, twilio_message_sid="SM1") is False
    assert await store.complete_delivery(ref, worker_id="w1", delivered=True, twilio_message_sid="SM1") is True
    assert await store.claim_delivery(ref, worker_id="w2") is False


async def test_status_callback_updates_message_by_sid(store):
    ref = await _placeholder(store)
    await store.attach_media(ref, expected_pending_path=RAW_PATH, media=MEDIA)
    await store.claim_delivery(ref, worker_id="w1")
    await store.complete_delivery(ref, worker_id="w1", delivered=True, twilio_message_sid="SM1")

    updated = await store.update_delivery_status(
        "acme",
        twilio_message_sid="SM1",
        status="undelivered",
        error_code="63016",
        error_message="Outside the allowed window",
    )

    assert updated == ref
    message = await store.get_message(ref)
    assert message.delivery_status == "undelivered"
    assert message.delivery_error == {"code": "63016", "message": "Outside the allowed window"}

    # Another tenant never resolves this SID.
    assert await store.update_delivery_status("beta", twilio_message_sid="SM1", status="read") is None
    assert await store.update_delivery_status("acme", twilio_message_sid="SM404", status="read") is None


async def test_rebuild_index_backfills_unindexed_placeholders(store):
    ref = await _placeholder(store)
    await store.drop_pending(ref)
    # A placeholder written without the index, as an older writer would leave it.
    legacy = await store._insert_message(
        "acme",
        "conv-1",
        build_placeholder_document(pending_media_path="acme/voice-notes/legacy.webm"),
    )
    assert await store.pending_refs() == []

    found = await store.rebuild_pending_index()

    assert found == 2
    assert {r.key for r in await store.pending_refs()} == {ref.key, legacy.key}


async def test_delivery_attempts_are_append_only(store):
    ref = await _placeholder(store)

    await store.append_delivery_attempt(ref, delivered=False, error_code="21211", error_message="bad number")
    await store.append_delivery_attempt(ref, delivered=True, twilio_message_sid="SM2")

    bodies = [m.body for m in await store.list_messages("acme", "conv-1") if m.relates_to == ref.message_id]
    assert bodies == [
        "Voice note delivery failed (21211): bad number",
        "Voice note delivered to the customer (delayed delivery after conversion).",
    ]


async def test_message_ref_key_round_trip():
    ref = MessageRef("companies/acme", "conv-1", "m1")
    assert MessageRef.from_key(ref.key) == ref


async def test_store_factory_is_cached_and_validated():
    clear_conversation_store_cache()
    try:
        assert create_conversation_store("memory") is create_conversation_store("memory")
        with pytest.raises(ValueError):
            create_conversation_store("firestore")
    finally:
        clear_conversation_store_cache()


async def test_tenant_without_credentials_never_borrows_deployment_account(store, monkeypatch):
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "ACdefault")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "default-token")
    monkeypatch.setenv("TWILIO_WHATSAPP_FROM", "whatsapp:+15559999999")
    await store.save_tenant("acme", credentials=ACME_CREDENTIALS)
    await store.save_tenant("beta")

    assert await store.get_credentials("acme") == ACME_CREDENTIALS
    assert await store.get_credentials("beta") is None
    assert await store.get_credentials("unknown") is None
