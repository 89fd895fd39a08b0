"""
Twilio status callback webhook.

Responsibilities:
- Receive delivery status updates for voice notes sent by the delivery adapter
- Validate the Twilio signature with the tenant's own auth token
- Record deliveryStatus / deliveryError on the originating message

NOTE:
- The tenant id is part of the callback URL, so lookups stay inside one tenant
  (SID index), instead of scanning every tenant's conversations.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from twilio.request_validator import RequestValidator

from src.voicenotes.config.settings import settings
from src.voicenotes.logging.logger import setup_logger
from src.voicenotes.store.conversation_store import ConversationStore, create_conversation_store

logger = setup_logger(__name__)

router = APIRouter()


def get_conversation_store() -> ConversationStore:
    return create_conversation_store(settings.conversation_store)


def _validate_twilio_signature(request: Request, form_data: Dict[str, Any], auth_token: str) -> bool:
    """
    Twilio signs: full URL + POST form params.
    """
    signature = request.headers.get("X-Twilio-Signature", "")
    validator = RequestValidator(auth_token)
    return validator.validate(str(request.url), form_data, signature)


@router.post("/webhooks/twilio/status/{tenant_id}")
async def twilio_status_callback(
    tenant_id: str,
    request: Request,
    store: ConversationStore = Depends(get_conversation_store),
) -> Dict[str, Any]:
    form = await request.form()
    form_data = {k: v for k, v in form.items()}

    message_sid = (form_data.get("MessageSid") or "").strip()
    message_status = (form_data.get("MessageStatus") or "").strip()
    error_code = (form_data.get("ErrorCode") or "").strip() or None
    error_message = (form_data.get("ErrorMessage") or "").strip() or None

    logger.info(
        "Twilio status callback received | tenant=%s | sid=%s | status=%s | error_code=%s",
        tenant_id,
        message_sid,
        message_status,
        error_code,
    )

    if not message_sid or not message_status:
        raise HTTPException(status_code=400, detail="Missing required fields")

    if settings.twilio_validate_signature:
        credentials = await store.get_credentials(tenant_id)
        if credentials is None or not _validate_twilio_signature(request, form_data, credentials.auth_token):
            logger.warning("Twilio signature rejected | tenant=%s | sid=%s", tenant_id, message_sid)
            raise HTTPException(status_code=403, detail="Invalid signature")

    ref = await store.update_delivery_status(
        tenant_id,
        twilio_message_sid=message_sid,
        status=message_status,
        error_code=error_code,
        error_message=error_message,
    )
    if ref is None:
        logger.warning("No message found for Twilio SID | tenant=%s | sid=%s", tenant_id, message_sid)
        raise HTTPException(status_code=404, detail="Message not found")

    logger.info("Delivery status updated | message=%s | status=%s", ref.key, message_status)
    return {"success": True}
