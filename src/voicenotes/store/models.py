"""
Conversation-store records.

Stored documents use the platform's camelCase field names (pendingMediaPath,
hasMedia, media[{url, contentType, index}], ...). The dataclasses here are read
views over those documents; writes go through the store's conditional updates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

# mediaState
MEDIA_PENDING = "pending"
MEDIA_ATTACHED = "attached"
MEDIA_FAILED = "failed"

# deliveryState
DELIVERY_CLAIMED = "claimed"
DELIVERY_DELIVERED = "delivered"
DELIVERY_FAILED = "failed"

# message kinds
KIND_MESSAGE = "message"
KIND_DELIVERY_ATTEMPT = "delivery_attempt"
KIND_SYSTEM = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class TenantCredentials:
    account_sid: str
    auth_token: str
    whatsapp_from: str

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.whatsapp_from)

    @classmethod
    def from_document(cls, doc: Optional[Mapping[str, Any]]) -> Optional["TenantCredentials"]:
        if not doc:
            return None
        creds = cls(
            account_sid=str(doc.get("accountSid") or "").strip(),
            auth_token=str(doc.get("authToken") or "").strip(),
            whatsapp_from=str(doc.get("whatsappFrom") or "").strip(),
        )
        return creds if creds.is_configured else None

    def to_document(self) -> Dict[str, str]:
        return {
            "accountSid": self.account_sid,
            "authToken": self.auth_token,
            "whatsappFrom": self.whatsapp_from,
        }


@dataclass(frozen=True)
class MessageRef:
    tenant_id: str
    conversation_id: str
    message_id: str

    @property
    def key(self) -> str:
        return f"{self.tenant_id}|{self.conversation_id}|{self.message_id}"

    @classmethod
    def from_key(cls, key: str) -> "MessageRef":
        tenant_id, conversation_id, message_id = key.split("|", 2)
        return cls(tenant_id=tenant_id, conversation_id=conversation_id, message_id=message_id)


@dataclass(frozen=True)
class MediaItem:
    url: str
    content_type: str
    index: int = 0

    def to_document(self) -> Dict[str, Any]:
        return {"url": self.url, "contentType": self.content_type, "index": self.index}


@dataclass(frozen=True)
class Conversation:
    tenant_id: str
    conversation_id: str
    customer_address: Optional[str]

    @classmethod
    def from_document(cls, tenant_id: str, conversation_id: str, doc: Mapping[str, Any]) -> "Conversation":
        address = (doc.get("customerAddress") or "").strip()
        return cls(tenant_id=tenant_id, conversation_id=conversation_id, customer_address=address or None)


@dataclass
class Message:
    ref: MessageRef
    body: Optional[str] = None
    sender: str = "agent"
    kind: str = KIND_MESSAGE
    pending_media_path: Optional[str] = None
    media: List[Dict[str, Any]] = field(default_factory=list)
    has_media: bool = False
    media_state: Optional[str] = None
    pending_attempts: int = 0
    pending_since: Optional[datetime] = None
    provenance: Dict[str, Any] = field(default_factory=dict)
    delivery_state: Optional[str] = None
    delivery_claimed_by: Optional[str] = None
    twilio_message_sid: Optional[str] = None
    delivery_status: Optional[str] = None
    delivery_error: Optional[Dict[str, Any]] = None
    relates_to: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_awaiting_media(self) -> bool:
        return bool(self.pending_media_path) and not self.media and self.media_state != MEDIA_FAILED

    @property
    def is_awaiting_delivery(self) -> bool:
        """Attached, but no delivery claim has been taken yet."""
        return self.has_media and bool(self.media) and self.media_state == MEDIA_ATTACHED and not self.delivery_state

    @classmethod
    def from_document(cls, ref: MessageRef, doc: Mapping[str, Any]) -> "Message":
        return cls(
            ref=ref,
            body=doc.get("body"),
            sender=doc.get("sender") or "agent",
            kind=doc.get("kind") or KIND_MESSAGE,
            pending_media_path=doc.get("pendingMediaPath") or None,
            media=list(doc.get("media") or []),
            has_media=bool(doc.get("hasMedia")),
            media_state=doc.get("mediaState"),
            pending_attempts=int(doc.get("pendingAttempts") or 0),
            pending_since=parse_ts(doc.get("pendingSince")),
            provenance=dict(doc.get("provenance") or {}),
            delivery_state=doc.get("deliveryState"),
            delivery_claimed_by=doc.get("deliveryClaimedBy"),
            twilio_message_sid=doc.get("twilioMessageSid"),
            delivery_status=doc.get("deliveryStatus"),
            delivery_error=doc.get("deliveryError"),
            relates_to=doc.get("relatesTo"),
            created_at=parse_ts(doc.get("createdAt")),
        )


def is_awaiting_media(doc: Mapping[str, Any]) -> bool:
    """The pending query: non-null pendingMediaPath, no media, not terminally failed."""
    return bool(doc.get("pendingMediaPath")) and not doc.get("media") and doc.get("mediaState") != MEDIA_FAILED


def build_placeholder_document(
    *,
    pending_media_path: str,
    body: Optional[str] = None,
    sender: str = "agent",
    provenance: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    created = now or utcnow()
    return {
        "kind": KIND_MESSAGE,
        "sender": sender,
        "body": body,
        "pendingMediaPath": pending_media_path,
        "hasMedia": False,
        "mediaState": MEDIA_PENDING,
        "pendingAttempts": 0,
        "pendingSince": created.isoformat(),
        "provenance": dict(provenance) if provenance else {},
        "createdAt": created.isoformat(),
    }


def build_delivery_attempt_document(
    *,
    relates_to: str,
    delivered: bool,
    twilio_message_sid: Optional[str] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if delivered:
        body = "Voice note delivered to the customer (delayed delivery after conversion)."
    else:
        body = f"Voice note delivery failed ({error_code or 'unknown'}): {error_message or 'Unknown error'}"
    doc: Dict[str, Any] = {
        "kind": KIND_DELIVERY_ATTEMPT,
        "sender": "system",
        "body": body,
        "relatesTo": relates_to,
        "outcome": DELIVERY_DELIVERED if delivered else DELIVERY_FAILED,
        "createdAt": (now or utcnow()).isoformat(),
    }
    if twilio_message_sid:
        doc["twilioMessageSid"] = twilio_message_sid
    if not delivered:
        doc["error"] = {"code": error_code, "message": error_message or "Unknown error"}
    return doc


def build_system_document(*, body: str, relates_to: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "kind": KIND_SYSTEM,
        "sender": "system",
        "body": body,
        "createdAt": (now or utcnow()).isoformat(),
    }
    if relates_to:
        doc["relatesTo"] = relates_to
    return doc
