from types import SimpleNamespace

import pytest
from twilio.base.exceptions import TwilioRestException

from src.tests.fakes import ACME_CREDENTIALS, FakeSender
from src.voicenotes.config.settings import settings
from src.voicenotes.dispatchers.channels.twilio_whatsapp_sender import TwilioWhatsAppSender
from src.voicenotes.dispatchers.delivery_adapter import (
    DeliveryAdapter,
    build_outbound_body,
    build_status_callback_url,
)
from src.voicenotes.store.models import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    KIND_DELIVERY_ATTEMPT,
    MediaItem,
    TenantCredentials,
)

MEDIA_URL = "https://media.example.test/media/acme/voice-notes/converted/note1.ogg?expires=1&signature=x"


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ("Hello there", "Hello there"),
        ("[AI] Hello there", "Hello there"),
        ("Hello there [ai]", "Hello there"),
        ("[ AI ]", None),
        ("", None),
        (None, None),
    ],
)
def test_outbound_body_never_carries_provenance_tag(body, expected):
    assert build_outbound_body(body) == expected


def test_status_callback_url_is_tenant_scoped(monkeypatch):
    monkeypatch.setattr(settings, "base_url", "https://api.example.test/")
    monkeypatch.setattr(settings, "twilio_status_callback_enabled", True)
    assert build_status_callback_url("acme") == "https://api.example.test/webhooks/twilio/status/acme"

    monkeypatch.setattr(settings, "twilio_status_callback_enabled", False)
    assert build_status_callback_url("acme") is None


async def _claimed_message(store, *, body="[AI] Your voice note"):
    await store.save_tenant("acme", credentials=ACME_CREDENTIALS)
    await store.save_conversation("acme", "conv-1", customer_address="+15551234567")
    ref = await store.create_voice_note_placeholder(
        "acme",
        "conv-1",
        pending_media_path="acme/voice-notes/note1.webm",
        body=body,
        provenance={"generatedBy": "assistant"},
    )
    await store.attach_media(
        ref,
        expected_pending_path="acme/voice-notes/note1.webm",
        media=MediaItem(url=MEDIA_URL, content_type="audio/ogg"),
    )
    assert await store.claim_delivery(ref, worker_id="w1")
    return ref


@pytest.mark.asyncio
async def test_successful_send_records_state_and_attempt(memory_store):
    ref = await _claimed_message(memory_store)
    sender = FakeSender(sid="SM77")
    adapter = DeliveryAdapter(memory_store, sender_factory=lambda _creds: sender)

    outcome = await adapter.deliver(
        ref,
        credentials=ACME_CREDENTIALS,
        recipient="+15551234567",
        media_url=MEDIA_URL,
        body="[AI] Your voice note",
        worker_id="w1",
    )

    assert outcome.delivered is True
    assert outcome.twilio_message_sid == "SM77"
    assert sender.calls[0]["body"] == "Your voice note"
    assert sender.calls[0]["media_url"] == [MEDIA_URL]

    message = await memory_store.get_message(ref)
    assert message.delivery_state == DELIVERY_DELIVERED
    assert message.twilio_message_sid == "SM77"
    assert message.provenance == {"generatedBy": "assistant"}

    attempts = [m for m in await memory_store.list_messages("acme", "conv-1") if m.kind == KIND_DELIVERY_ATTEMPT]
    assert len(attempts) == 1
    assert attempts[0].sender == "system"
    assert attempts[0].body == "Voice note delivered to the customer (delayed delivery after conversion)."


@pytest.mark.asyncio
async def test_twilio_error_becomes_visible_failure(memory_store):
    ref = await _claimed_message(memory_store)
    error = TwilioRestException(400, "/Messages", msg="Invalid 'To' number", code=21211)
    adapter = DeliveryAdapter(memory_store, sender_factory=lambda _creds: FakeSender(error=error))

    outcome = await adapter.deliver(
        ref,
        credentials=ACME_CREDENTIALS,
        recipient="+15551234567",
        media_url=MEDIA_URL,
        body=None,
        worker_id="w1",
    )

    assert outcome.delivered is False
    assert outcome.error_code == "21211"
    message = await memory_store.get_message(ref)
    assert message.delivery_state == DELIVERY_FAILED
    assert message.delivery_error == {"code": "21211", "message": "Invalid 'To' number"}


@pytest.mark.asyncio
async def test_network_error_is_classified_by_exception_type(memory_store):
    ref = await _claimed_message(memory_store)
    adapter = DeliveryAdapter(
        memory_store,
        sender_factory=lambda _creds: FakeSender(error=ConnectionError("connection reset")),
    )

    outcome = await adapter.deliver(
        ref,
        credentials=ACME_CREDENTIALS,
        recipient="+15551234567",
        media_url=MEDIA_URL,
        body="hi",
        worker_id="w1",
    )

    assert outcome.delivered is False
    assert outcome.error_code == "ConnectionError"
    assert outcome.error_message == "connection reset"


@pytest.mark.asyncio
async def test_store_failure_after_send_is_not_raised(memory_store, monkeypatch):
    ref = await _claimed_message(memory_store)
    sender = FakeSender()
    adapter = DeliveryAdapter(memory_store, sender_factory=lambda _creds: sender)

    async def _boom(*args, **kwargs):
        raise RuntimeError("store offline")

    monkeypatch.setattr(memory_store, "complete_delivery", _boom)

    outcome = await adapter.deliver(
        ref,
        credentials=ACME_CREDENTIALS,
        recipient="+15551234567",
        media_url=MEDIA_URL,
        body="hi",
        worker_id="w1",
    )

    assert outcome.delivered is True
    assert len(sender.calls) == 1


class _FakeMessages:
    def __init__(self):
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(sid="SM999")


def test_whatsapp_sender_prefixes_addresses():
    messages = _FakeMessages()
    sender = TwilioWhatsAppSender(
        TenantCredentials("AC123", "secret-token", "+15550000000"),
        client=SimpleNamespace(messages=messages),
    )

    sid = sender.send_text_with_media(
        to="+15551234567",
        body=None,
        media_url=MEDIA_URL,
        status_callback="https://api.example.test/webhooks/twilio/status/acme",
    )

    assert sid == "SM999"
    assert messages.kwargs == {
        "from_": "whatsapp:+15550000000",
        "to": "whatsapp:+15551234567",
        "body": "",
        "media_url": [MEDIA_URL],
        "status_callback": "https://api.example.test/webhooks/twilio/status/acme",
    }


def test_whatsapp_sender_requires_credentials():
    with pytest.raises(ValueError):
        TwilioWhatsAppSender(TenantCredentials("", "token", "whatsapp:+1"))
