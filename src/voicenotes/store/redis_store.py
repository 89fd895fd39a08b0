"""
Redis-backed conversation store.

Key layout (prefix = settings.redis_key_prefix):
- {p}:tenants                          set of tenant ids
- {p}:tenant:{t}                       tenant document (JSON)
- {p}:t:{t}:convs                      set of conversation ids
- {p}:t:{t}:conv:{c}                   conversation document (JSON)
- {p}:t:{t}:c:{c}:msgs                 list of message ids (insertion order)
- {p}:t:{t}:c:{c}:msg:{m}              message document (JSON)
- {p}:pending                          set of pending MessageRef keys
- {p}:t:{t}:sid:{sid}                  MessageRef key for a Twilio message SID

Conditional updates use WATCH/MULTI optimistic transactions on the message key.
"""

from __future__ import annotations

import json
import uuid
from typing import List, Optional, Tuple

from redis.exceptions import RedisError, WatchError

from src.voicenotes.config.settings import settings
from src.voicenotes.errors import StoreWriteFailure
from src.voicenotes.infra.redis.client import RedisClient
from src.voicenotes.logging.logger import setup_logger
from src.voicenotes.store.conversation_store import ConversationStore, Document, Mutation
from src.voicenotes.store.models import MessageRef

logger = setup_logger(__name__)


def _loads(raw: Optional[str]) -> Optional[Document]:
    if raw is None:
        return None
    try:
        doc = json.loads(raw)
    except ValueError:
        logger.warning("Corrupt document in Redis; ignoring")
        return None
    return doc if isinstance(doc, dict) else None


class RedisConversationStore(ConversationStore):
    def __init__(self, redis_client: RedisClient, *, prefix: Optional[str] = None) -> None:
        self.redis_client = redis_client
        self.prefix = prefix or settings.redis_key_prefix

    # keys

    def _tenants_key(self) -> str:
        return f"{self.prefix}:tenants"

    def _tenant_key(self, tenant_id: str) -> str:
        return f"{self.prefix}:tenant:{tenant_id}"

    def _convs_key(self, tenant_id: str) -> str:
        return f"{self.prefix}:t:{tenant_id}:convs"

    def _conv_key(self, tenant_id: str, conversation_id: str) -> str:
        return f"{self.prefix}:t:{tenant_id}:conv:{conversation_id}"

    def _msgs_key(self, tenant_id: str, conversation_id: str) -> str:
        return f"{self.prefix}:t:{tenant_id}:c:{conversation_id}:msgs"

    def _msg_key(self, ref: MessageRef) -> str:
        return f"{self.prefix}:t:{ref.tenant_id}:c:{ref.conversation_id}:msg:{ref.message_id}"

    def _pending_key(self) -> str:
        return f"{self.prefix}:pending"

    def _sid_key(self, tenant_id: str, sid: str) -> str:
        return f"{self.prefix}:t:{tenant_id}:sid:{sid}"

    # tenants & conversations

    async def list_tenants(self) -> List[str]:
        client = await self.redis_client.get_client()
        return sorted(await client.smembers(self._tenants_key()))

    async def _get_tenant_doc(self, tenant_id: str) -> Optional[Document]:
        client = await self.redis_client.get_client()
        return _loads(await client.get(self._tenant_key(tenant_id)))

    async def _put_tenant_doc(self, tenant_id: str, doc: Document) -> None:
        client = await self.redis_client.get_client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._tenant_key(tenant_id), json.dumps(doc))
                pipe.sadd(self._tenants_key(), tenant_id)
                await pipe.execute()
        except RedisError as exc:
            raise StoreWriteFailure(f"Failed to save tenant {tenant_id}") from exc

    async def list_conversation_ids(self, tenant_id: str) -> List[str]:
        client = await self.redis_client.get_client()
        return sorted(await client.smembers(self._convs_key(tenant_id)))

    async def _get_conversation_doc(self, tenant_id: str, conversation_id: str) -> Optional[Document]:
        client = await self.redis_client.get_client()
        return _loads(await client.get(self._conv_key(tenant_id, conversation_id)))

    async def _put_conversation_doc(self, tenant_id: str, conversation_id: str, doc: Document) -> None:
        client = await self.redis_client.get_client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._conv_key(tenant_id, conversation_id), json.dumps(doc))
                pipe.sadd(self._convs_key(tenant_id), conversation_id)
                pipe.sadd(self._tenants_key(), tenant_id)
                await pipe.execute()
        except RedisError as exc:
            raise StoreWriteFailure(f"Failed to save conversation {tenant_id}/{conversation_id}") from exc

    # messages

    async def _list_message_docs(self, tenant_id: str, conversation_id: str) -> List[Tuple[str, Document]]:
        client = await self.redis_client.get_client()
        ids = await client.lrange(self._msgs_key(tenant_id, conversation_id), 0, -1)
        if not ids:
            return []
        keys = [self._msg_key(MessageRef(tenant_id, conversation_id, mid)) for mid in ids]
        raws = await client.mget(keys)
        out: List[Tuple[str, Document]] = []
        for mid, raw in zip(ids, raws):
            doc = _loads(raw)
            if doc is not None:
                out.append((mid, doc))
        return out

    async def _get_message_doc(self, ref: MessageRef) -> Optional[Document]:
        client = await self.redis_client.get_client()
        return _loads(await client.get(self._msg_key(ref)))

    async def _insert_message(self, tenant_id: str, conversation_id: str, doc: Document) -> MessageRef:
        client = await self.redis_client.get_client()
        ref = MessageRef(tenant_id, conversation_id, uuid.uuid4().hex)
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._msg_key(ref), json.dumps(doc))
                pipe.rpush(self._msgs_key(tenant_id, conversation_id), ref.message_id)
                pipe.sadd(self._convs_key(tenant_id), conversation_id)
                pipe.sadd(self._tenants_key(), tenant_id)
                await pipe.execute()
        except RedisError as exc:
            raise StoreWriteFailure(f"Failed to insert message into {tenant_id}/{conversation_id}") from exc
        return ref

    async def _update_message(self, ref: MessageRef, mutate: Mutation) -> Optional[Document]:
        client = await self.redis_client.get_client()
        key = self._msg_key(ref)
        try:
            async with client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        current = _loads(await pipe.get(key))
                        if current is None:
                            return None
                        updated = mutate(dict(current))
                        if updated is None:
                            return None
                        pipe.multi()
                        pipe.set(key, json.dumps(updated))
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("Message changed during update; retrying | key=%s", key)
                        continue
        except RedisError as exc:
            raise StoreWriteFailure(f"Failed to update message {ref.key}") from exc

    # indexes

    async def _add_pending(self, ref: MessageRef) -> None:
        client = await self.redis_client.get_client()
        await client.sadd(self._pending_key(), ref.key)

    async def _remove_pending(self, ref: MessageRef) -> None:
        client = await self.redis_client.get_client()
        await client.srem(self._pending_key(), ref.key)

    async def pending_refs(self) -> List[MessageRef]:
        client = await self.redis_client.get_client()
        return [MessageRef.from_key(key) for key in sorted(await client.smembers(self._pending_key()))]

    async def _index_sid(self, tenant_id: str, sid: str, ref: MessageRef) -> None:
        client = await self.redis_client.get_client()
        await client.set(self._sid_key(tenant_id, sid), ref.key)

    async def _lookup_sid(self, tenant_id: str, sid: str) -> Optional[MessageRef]:
        client = await self.redis_client.get_client()
        raw = await client.get(self._sid_key(tenant_id, sid))
        return MessageRef.from_key(raw) if raw else None
