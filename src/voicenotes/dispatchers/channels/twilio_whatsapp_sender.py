"""
Twilio WhatsApp sender.

Responsibilities:
- Send WhatsApp media messages via the Twilio API with per-tenant credentials
- Keep channel-specific logic isolated from the delivery adapter
"""

from __future__ import annotations

from typing import List, Optional

from twilio.rest import Client

from src.voicenotes.logging.logger import setup_logger
from src.voicenotes.store.models import TenantCredentials

logger = setup_logger(__name__)


class TwilioWhatsAppSender:
    def __init__(self, credentials: TenantCredentials, *, client: Optional[Client] = None) -> None:
        if not credentials.account_sid:
            raise ValueError("TwilioWhatsAppSender: account_sid is missing")
        if not credentials.auth_token:
            raise ValueError("TwilioWhatsAppSender: auth_token is missing")
        if not credentials.whatsapp_from:
            raise ValueError("TwilioWhatsAppSender: whatsapp_from is missing")

        self.whatsapp_from = _as_whatsapp_address(credentials.whatsapp_from)
        self._client = client or Client(credentials.account_sid, credentials.auth_token)

    def send_text_with_media(
        self,
        *,
        to: str,
        body: Optional[str],
        media_url: str | List[str],
        status_callback: Optional[str] = None,
    ) -> str:
        """
        Send a WhatsApp message that includes media (audio/image/etc) plus an optional body.

        Twilio expects a publicly reachable URL for each media item.

        Returns:
            message_sid (str)
        """
        if not to:
            raise ValueError("TwilioWhatsAppSender: 'to' is required")
        if not media_url:
            raise ValueError("TwilioWhatsAppSender: 'media_url' is required")

        urls = media_url if isinstance(media_url, list) else [media_url]
        to_addr = _as_whatsapp_address(to)

        logger.info("Sending WhatsApp media message via Twilio | to=%s | media_count=%s", to_addr, len(urls))

        kwargs = {
            "from_": self.whatsapp_from,
            "to": to_addr,
            "body": body or "",
            "media_url": urls,
        }
        if status_callback:
            kwargs["status_callback"] = status_callback

        msg = self._client.messages.create(**kwargs)

        logger.info("Twilio send success | sid=%s | to=%s", msg.sid, to_addr)
        return msg.sid


def _as_whatsapp_address(address: str) -> str:
    addr = (address or "").strip()
    return addr if addr.startswith("whatsapp:") else f"whatsapp:{addr}"
