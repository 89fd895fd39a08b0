"""
Conversation store (tenant-partitioned document store).

Responsibilities:
- Tenant credentials, conversations and messages, partitioned by tenant
- The pending-media index (populated when a placeholder is created, drained by the
  reconciliation scheduler)
- Conditional (compare-and-swap) message updates: media attach, retry bookkeeping,
  delivery claim and completion

NOTE:
- Backends only implement document primitives (`_update_message` is the single
  atomic read-modify-write). Every state transition lives in this module, so the
  memory and Redis backends share the exact same semantics.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from src.voicenotes.store.models import (
    DELIVERY_CLAIMED,
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    MEDIA_ATTACHED,
    MEDIA_FAILED,
    Conversation,
    MediaItem,
    Message,
    MessageRef,
    TenantCredentials,
    build_delivery_attempt_document,
    build_placeholder_document,
    build_system_document,
    is_awaiting_media,
    utcnow,
)

Document = Dict[str, Any]
Mutation = Callable[[Document], Optional[Document]]


class ConversationStore(ABC):
    # ---- backend primitives -------------------------------------------------

    @abstractmethod
    async def list_tenants(self) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    async def _get_tenant_doc(self, tenant_id: str) -> Optional[Document]:
        raise NotImplementedError

    @abstractmethod
    async def _put_tenant_doc(self, tenant_id: str, doc: Document) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_conversation_ids(self, tenant_id: str) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    async def _get_conversation_doc(self, tenant_id: str, conversation_id: str) -> Optional[Document]:
        raise NotImplementedError

    @abstractmethod
    async def _put_conversation_doc(self, tenant_id: str, conversation_id: str, doc: Document) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _list_message_docs(self, tenant_id: str, conversation_id: str) -> List[Tuple[str, Document]]:
        raise NotImplementedError

    @abstractmethod
    async def _get_message_doc(self, ref: MessageRef) -> Optional[Document]:
        raise NotImplementedError

    @abstractmethod
    async def _insert_message(self, tenant_id: str, conversation_id: str, doc: Document) -> MessageRef:
        raise NotImplementedError

    @abstractmethod
    async def _update_message(self, ref: MessageRef, mutate: Mutation) -> Optional[Document]:
        """
        Atomically apply `mutate` to the current document.

        `mutate` returns the new document, or None to leave it unchanged.
        Returns the written document, or None when nothing was written.
        """
        raise NotImplementedError

    @abstractmethod
    async def _add_pending(self, ref: MessageRef) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _remove_pending(self, ref: MessageRef) -> None:
        raise NotImplementedError

    @abstractmethod
    async def pending_refs(self) -> List[MessageRef]:
        raise NotImplementedError

    @abstractmethod
    async def _index_sid(self, tenant_id: str, sid: str, ref: MessageRef) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _lookup_sid(self, tenant_id: str, sid: str) -> Optional[MessageRef]:
        raise NotImplementedError

    # ---- tenants & conversations -------------------------------------------

    async def save_tenant(
        self,
        tenant_id: str,
        *,
        credentials: Optional[TenantCredentials] = None,
        name: Optional[str] = None,
    ) -> None:
        doc: Document = {"name": name or tenant_id}
        if credentials is not None:
            doc["twilio"] = credentials.to_document()
        await self._put_tenant_doc(tenant_id, doc)

    async def get_credentials(self, tenant_id: str) -> Optional[TenantCredentials]:
        doc = await self._get_tenant_doc(tenant_id)
        return TenantCredentials.from_document(doc.get("twilio")) if doc else None

    async def save_conversation(
        self,
        tenant_id: str,
        conversation_id: str,
        *,
        customer_address: Optional[str] = None,
    ) -> Conversation:
        doc: Document = {"customerAddress": customer_address or "", "createdAt": utcnow().isoformat()}
        await self._put_conversation_doc(tenant_id, conversation_id, doc)
        return Conversation.from_document(tenant_id, conversation_id, doc)

    async def get_conversation(self, tenant_id: str, conversation_id: str) -> Optional[Conversation]:
        doc = await self._get_conversation_doc(tenant_id, conversation_id)
        if doc is None:
            return None
        return Conversation.from_document(tenant_id, conversation_id, doc)

    # ---- messages -----------------------------------------------------------

    async def get_message(self, ref: MessageRef) -> Optional[Message]:
        doc = await self._get_message_doc(ref)
        return Message.from_document(ref, doc) if doc is not None else None

    async def list_messages(self, tenant_id: str, conversation_id: str) -> List[Message]:
        docs = await self._list_message_docs(tenant_id, conversation_id)
        return [
            Message.from_document(MessageRef(tenant_id, conversation_id, message_id), doc)
            for message_id, doc in docs
        ]

    async def find_pending_messages(self, tenant_id: str, conversation_id: str) -> List[Message]:
        """Messages with a non-null pendingMediaPath and no media."""
        return [m for m in await self.list_messages(tenant_id, conversation_id) if m.is_awaiting_media]

    async def create_voice_note_placeholder(
        self,
        tenant_id: str,
        conversation_id: str,
        *,
        pending_media_path: str,
        body: Optional[str] = None,
        sender: str = "agent",
        provenance: Optional[Mapping[str, Any]] = None,
    ) -> MessageRef:
        doc = build_placeholder_document(
            pending_media_path=pending_media_path,
            body=body,
            sender=sender,
            provenance=provenance,
        )
        ref = await self._insert_message(tenant_id, conversation_id, doc)
        await self._add_pending(ref)
        return ref

    async def append_system_message(
        self,
        tenant_id: str,
        conversation_id: str,
        *,
        body: str,
        relates_to: Optional[str] = None,
    ) -> MessageRef:
        return await self._insert_message(
            tenant_id,
            conversation_id,
            build_system_document(body=body, relates_to=relates_to),
        )

    async def append_delivery_attempt(
        self,
        ref: MessageRef,
        *,
        delivered: bool,
        twilio_message_sid: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> MessageRef:
        doc = build_delivery_attempt_document(
            relates_to=ref.message_id,
            delivered=delivered,
            twilio_message_sid=twilio_message_sid,
            error_code=error_code,
            error_message=error_message,
        )
        return await self._insert_message(ref.tenant_id, ref.conversation_id, doc)

    # ---- pending index ------------------------------------------------------

    async def rebuild_pending_index(self) -> int:
        """
        Full scan: tenants -> conversations -> messages awaiting media.

        Backfills the pending index (e.g. placeholders written by an older writer
        that did not maintain it). Returns the number of pending messages found.
        """
        found = 0
        for tenant_id in await self.list_tenants():
            for conversation_id in await self.list_conversation_ids(tenant_id):
                for message in await self.find_pending_messages(tenant_id, conversation_id):
                    await self._add_pending(message.ref)
                    found += 1
        return found

    async def drop_pending(self, ref: MessageRef) -> None:
        await self._remove_pending(ref)

    # ---- conditional transitions -------------------------------------------

    async def attach_media(self, ref: MessageRef, *, expected_pending_path: str, media: MediaItem) -> bool:
        """
        pending -> attached, in one write, only while the pointer is still `expected_pending_path`.

        The ref stays in the pending index until the scheduler settles delivery
        (claim taken, or no delivery configured), so a tick that dies between
        attach and claim is picked up again by the next one.
        """

        def _mutate(doc: Document) -> Optional[Document]:
            if not is_awaiting_media(doc) or doc.get("pendingMediaPath") != expected_pending_path:
                return None
            updated = dict(doc)
            updated["media"] = [media.to_document()]
            updated["hasMedia"] = True
            updated["pendingMediaPath"] = None
            updated["mediaState"] = MEDIA_ATTACHED
            updated["mediaAttachedAt"] = utcnow().isoformat()
            return updated

        return await self._update_message(ref, _mutate) is not None

    async def record_pending_miss(self, ref: MessageRef, *, expected_pending_path: str) -> Optional[Message]:
        def _mutate(doc: Document) -> Optional[Document]:
            if not is_awaiting_media(doc) or doc.get("pendingMediaPath") != expected_pending_path:
                return None
            updated = dict(doc)
            updated["pendingAttempts"] = int(doc.get("pendingAttempts") or 0) + 1
            updated["lastPendingCheckAt"] = utcnow().isoformat()
            if not doc.get("pendingSince"):
                updated["pendingSince"] = doc.get("createdAt") or utcnow().isoformat()
            return updated

        written = await self._update_message(ref, _mutate)
        return Message.from_document(ref, written) if written is not None else None

    async def fail_pending_media(self, ref: MessageRef, *, expected_pending_path: str, reason: str) -> bool:
        """pending -> failed (terminal). Surfaces a system message in the conversation."""

        def _mutate(doc: Document) -> Optional[Document]:
            if not is_awaiting_media(doc) or doc.get("pendingMediaPath") != expected_pending_path:
                return None
            updated = dict(doc)
            updated["mediaState"] = MEDIA_FAILED
            updated["mediaError"] = reason
            updated["mediaFailedAt"] = utcnow().isoformat()
            return updated

        written = await self._update_message(ref, _mutate)
        if written is None:
            return False
        await self._remove_pending(ref)
        await self.append_system_message(
            ref.tenant_id,
            ref.conversation_id,
            body=f"Voice note could not be prepared for delivery: {reason}",
            relates_to=ref.message_id,
        )
        return True

    async def claim_delivery(self, ref: MessageRef, *, worker_id: str) -> bool:
        """
        Compare-and-swap claim taken before the (non-idempotent) gateway call.
        Only one caller ever wins per message.
        """

        def _mutate(doc: Document) -> Optional[Document]:
            if not doc.get("hasMedia") or not doc.get("media") or doc.get("deliveryState"):
                return None
            updated = dict(doc)
            updated["deliveryState"] = DELIVERY_CLAIMED
            updated["deliveryClaimedBy"] = worker_id
            updated["deliveryClaimedAt"] = utcnow().isoformat()
            return updated

        return await self._update_message(ref, _mutate) is not None

    async def complete_delivery(
        self,
        ref: MessageRef,
        *,
        worker_id: str,
        delivered: bool,
        twilio_message_sid: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        def _mutate(doc: Document) -> Optional[Document]:
            if doc.get("deliveryState") != DELIVERY_CLAIMED or doc.get("deliveryClaimedBy") != worker_id:
                return None
            updated = dict(doc)
            updated["deliveryState"] = DELIVERY_DELIVERED if delivered else DELIVERY_FAILED
            updated["deliveryCompletedAt"] = utcnow().isoformat()
            if twilio_message_sid:
                updated["twilioMessageSid"] = twilio_message_sid
            if not delivered:
                updated["deliveryError"] = {"code": error_code, "message": error_message or "Unknown error"}
            return updated

        written = await self._update_message(ref, _mutate)
        if written is not None and twilio_message_sid:
            await self._index_sid(ref.tenant_id, twilio_message_sid, ref)
        return written is not None

    async def update_delivery_status(
        self,
        tenant_id: str,
        *,
        twilio_message_sid: str,
        status: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[MessageRef]:
        """Apply a gateway status callback to the message that carries this SID."""
        ref = await self._lookup_sid(tenant_id, twilio_message_sid)
        if ref is None:
            return None

        def _mutate(doc: Document) -> Optional[Document]:
            if doc.get("twilioMessageSid") != twilio_message_sid:
                return None
            updated = dict(doc)
            updated["deliveryStatus"] = status
            updated["lastStatusUpdate"] = utcnow().isoformat()
            if error_code:
                updated["deliveryError"] = {"code": error_code, "message": error_message or "Unknown error"}
            return updated

        written = await self._update_message(ref, _mutate)
        return ref if written is not None else None


class InMemoryConversationStore(ConversationStore):
    """
    Process-local store for local development and tests.

    Mutations run without awaiting in between, so each one is atomic with respect to
    other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._tenants: Dict[str, Document] = {}
        self._conversations: Dict[str, Dict[str, Document]] = {}
        self._messages: Dict[Tuple[str, str], Dict[str, Document]] = {}
        self._pending: Dict[str, MessageRef] = {}
        self._sids: Dict[Tuple[str, str], MessageRef] = {}
        self._seq = 0

    async def list_tenants(self) -> List[str]:
        return list(dict.fromkeys([*self._tenants, *self._conversations]))

    async def _get_tenant_doc(self, tenant_id: str) -> Optional[Document]:
        doc = self._tenants.get(tenant_id)
        return dict(doc) if doc is not None else None

    async def _put_tenant_doc(self, tenant_id: str, doc: Document) -> None:
        self._tenants[tenant_id] = dict(doc)
        self._conversations.setdefault(tenant_id, {})

    async def list_conversation_ids(self, tenant_id: str) -> List[str]:
        return list(self._conversations.get(tenant_id, {}).keys())

    async def _get_conversation_doc(self, tenant_id: str, conversation_id: str) -> Optional[Document]:
        doc = self._conversations.get(tenant_id, {}).get(conversation_id)
        return dict(doc) if doc is not None else None

    async def _put_conversation_doc(self, tenant_id: str, conversation_id: str, doc: Document) -> None:
        self._conversations.setdefault(tenant_id, {})[conversation_id] = dict(doc)
        self._messages.setdefault((tenant_id, conversation_id), {})

    async def _list_message_docs(self, tenant_id: str, conversation_id: str) -> List[Tuple[str, Document]]:
        return [(mid, dict(doc)) for mid, doc in self._messages.get((tenant_id, conversation_id), {}).items()]

    async def _get_message_doc(self, ref: MessageRef) -> Optional[Document]:
        doc = self._messages.get((ref.tenant_id, ref.conversation_id), {}).get(ref.message_id)
        return dict(doc) if doc is not None else None

    async def _insert_message(self, tenant_id: str, conversation_id: str, doc: Document) -> MessageRef:
        self._seq += 1
        message_id = f"memory-{self._seq}"
        self._messages.setdefault((tenant_id, conversation_id), {})[message_id] = dict(doc)
        return MessageRef(tenant_id, conversation_id, message_id)

    async def _update_message(self, ref: MessageRef, mutate: Mutation) -> Optional[Document]:
        bucket = self._messages.get((ref.tenant_id, ref.conversation_id), {})
        current = bucket.get(ref.message_id)
        if current is None:
            return None
        updated = mutate(dict(current))
        if updated is None:
            return None
        bucket[ref.message_id] = dict(updated)
        return dict(updated)

    async def _add_pending(self, ref: MessageRef) -> None:
        self._pending[ref.key] = ref

    async def _remove_pending(self, ref: MessageRef) -> None:
        self._pending.pop(ref.key, None)

    async def pending_refs(self) -> List[MessageRef]:
        return list(self._pending.values())

    async def _index_sid(self, tenant_id: str, sid: str, ref: MessageRef) -> None:
        self._sids[(tenant_id, sid)] = ref

    async def _lookup_sid(self, tenant_id: str, sid: str) -> Optional[MessageRef]:
        return self._sids.get((tenant_id, sid))


def create_conversation_store(store_name: str) -> ConversationStore:
    return _create_conversation_store_cached(store_name)


@lru_cache
def _create_conversation_store_cached(store_name: str) -> ConversationStore:
    if store_name == "redis":
        from src.voicenotes.infra.redis.client import RedisClient
        from src.voicenotes.store.redis_store import RedisConversationStore

        return RedisConversationStore(RedisClient())

    if store_name != "memory":
        raise ValueError(f"Unknown conversation store: {store_name!r}")
    return InMemoryConversationStore()


def clear_conversation_store_cache() -> None:
    _create_conversation_store_cached.cache_clear()
