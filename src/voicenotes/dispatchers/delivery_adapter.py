"""
Delivery Adapter (voice note -> customer).

Responsibilities:
- Build the outbound payload (body text + artifact URL) for one resolved voice note
- Send it through the tenant's Twilio WhatsApp sender
- Record the outcome: delivery state on the message + an append-only
  DeliveryAttemptRecord (system message) in the conversation

IMPORTANT:
- The caller must hold the delivery claim for the message. This adapter never
  retries and never re-queues: a failed send is a terminal, visible outcome.
- Provenance (who authored the body) is structured metadata on the message and is
  never part of the outbound text.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Callable, Optional

from twilio.base.exceptions import TwilioRestException

from src.voicenotes.config.settings import settings
from src.voicenotes.dispatchers.channels.twilio_whatsapp_sender import TwilioWhatsAppSender
from src.voicenotes.errors import DeliveryFailure
from src.voicenotes.logging.logger import setup_logger
from src.voicenotes.store.conversation_store import ConversationStore
from src.voicenotes.store.models import MessageRef, TenantCredentials

logger = setup_logger(__name__)

SenderFactory = Callable[[TenantCredentials], TwilioWhatsAppSender]

# Older message bodies still carry the inline automation tag.
_LEGACY_PROVENANCE_TAG = re.compile(r"\s*\[\s*AI\s*\]\s*", re.IGNORECASE)


def build_outbound_body(body: Optional[str]) -> Optional[str]:
    if not body:
        return None
    text = _LEGACY_PROVENANCE_TAG.sub(" ", body).strip()
    return text or None


def build_status_callback_url(tenant_id: str) -> Optional[str]:
    if not settings.twilio_status_callback_enabled:
        return None
    base = (settings.base_url or "").strip().rstrip("/")
    if not base:
        return None
    return f"{base}/webhooks/twilio/status/{tenant_id}"


@dataclass(frozen=True)
class DeliveryOutcome:
    delivered: bool
    twilio_message_sid: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class DeliveryAdapter:
    def __init__(
        self,
        store: ConversationStore,
        *,
        sender_factory: Optional[SenderFactory] = None,
    ) -> None:
        self.store = store
        self.sender_factory = sender_factory or TwilioWhatsAppSender

    async def deliver(
        self,
        ref: MessageRef,
        *,
        credentials: TenantCredentials,
        recipient: str,
        media_url: str,
        body: Optional[str],
        worker_id: str,
    ) -> DeliveryOutcome:
        outbound_body = build_outbound_body(body)

        try:
            sid = await self._send(
                credentials=credentials,
                recipient=recipient,
                media_url=media_url,
                body=outbound_body,
                status_callback=build_status_callback_url(ref.tenant_id),
            )
            outcome = DeliveryOutcome(delivered=True, twilio_message_sid=sid)
            logger.info("Voice note delivered | message=%s | sid=%s", ref.key, sid)
        except DeliveryFailure as exc:
            outcome = DeliveryOutcome(delivered=False, error_code=exc.code, error_message=exc.message)
            logger.error(
                "Voice note delivery failed | message=%s | code=%s | error=%s",
                ref.key,
                exc.code,
                exc.message,
            )

        await self._record(ref, outcome, worker_id=worker_id)
        return outcome

    async def _send(
        self,
        *,
        credentials: TenantCredentials,
        recipient: str,
        media_url: str,
        body: Optional[str],
        status_callback: Optional[str],
    ) -> str:
        try:
            sender = self.sender_factory(credentials)
            return await asyncio.to_thread(
                sender.send_text_with_media,
                to=recipient,
                body=body,
                media_url=[media_url],
                status_callback=status_callback,
            )
        except TwilioRestException as exc:
            code = str(exc.code) if exc.code is not None else str(exc.status)
            raise DeliveryFailure(exc.msg or str(exc), code=code) from exc
        except Exception as exc:
            raise DeliveryFailure(str(exc) or exc.__class__.__name__, code=exc.__class__.__name__) from exc

    async def _record(self, ref: MessageRef, outcome: DeliveryOutcome, *, worker_id: str) -> None:
        # The claim is already held, so a failed write here can never cause a re-send.
        try:
            await self.store.complete_delivery(
                ref,
                worker_id=worker_id,
                delivered=outcome.delivered,
                twilio_message_sid=outcome.twilio_message_sid,
                error_code=outcome.error_code,
                error_message=outcome.error_message,
            )
        except Exception:
            logger.exception("Failed to record delivery state | message=%s", ref.key)

        try:
            await self.store.append_delivery_attempt(
                ref,
                delivered=outcome.delivered,
                twilio_message_sid=outcome.twilio_message_sid,
                error_code=outcome.error_code,
                error_message=outcome.error_message,
            )
        except Exception:
            logger.exception("Failed to append delivery attempt record | message=%s", ref.key)
