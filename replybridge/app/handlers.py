from __future__ import annotations

import logging
from typing import Any, Dict

from replybridge.app.context_cache import ContextCache
from replybridge.core.envelopes import (
    ClearCacheMessage,
    GenerateReplyMessage,
    GetCachedContextMessage,
    GetCredentialMessage,
    GetStorageInfoMessage,
    SetCachedContextMessage,
    SetCredentialMessage,
)
from replybridge.core.errors import ValidationError
from replybridge.core.storage import KeyValueStore
from replybridge.llm.reply_client import ReplyClient


class CoordinatorHandlers:
    """Business handlers behind the message router, one per message kind."""

    def __init__(
        self,
        store: KeyValueStore,
        cache: ContextCache,
        reply_client: ReplyClient,
        *,
        credential_key: str = "settings.credential",
    ) -> None:
        self._store = store
        self._cache = cache
        self._reply_client = reply_client
        self._credential_key = credential_key
        self._logger = logging.getLogger("replybridge.handlers")

    async def get_credential(self, message: GetCredentialMessage) -> Dict[str, Any]:
        credential = await self._store.get(self._credential_key)
        return {"credential": credential if isinstance(credential, str) else None}

    async def set_credential(self, message: SetCredentialMessage) -> Dict[str, Any]:
        credential = message.credential.strip()
        if not credential:
            raise ValidationError("credential cannot be empty")
        await self._store.set(self._credential_key, credential)
        self._logger.info("credential updated")
        return {}

    async def get_cached_context(self, message: GetCachedContextMessage) -> Dict[str, Any]:
        return {"context": await self._cache.get(message.scope, message.thread_id)}

    async def set_cached_context(self, message: SetCachedContextMessage) -> Dict[str, Any]:
        expires_at = await self._cache.set(message.scope, message.thread_id, message.context, message.ttl_seconds)
        return {"expiresAt": expires_at}

    async def clear_cache(self, message: ClearCacheMessage) -> Dict[str, Any]:
        if message.all:
            removed = await self._cache.clear_all()
        else:
            removed = await self._cache.evict_expired()
        return {"removed": removed}

    async def get_storage_info(self, message: GetStorageInfoMessage) -> Dict[str, Any]:
        usage = await self._store.usage()
        credential = await self._store.get(self._credential_key)
        return {
            "bytesUsed": usage.bytes_used,
            "quotaBytes": usage.quota_bytes,
            "percentage": usage.percentage,
            "hasCredential": isinstance(credential, str) and bool(credential),
        }

    async def generate_reply(self, message: GenerateReplyMessage) -> Dict[str, Any]:
        credential = message.credential.strip()
        if not credential:
            stored = await self._store.get(self._credential_key)
            credential = stored if isinstance(stored, str) else ""
        if not credential:
            raise ValidationError("API key is not configured")
        text = await self._reply_client.generate_reply(message.messages, credential, message.options)
        return {"text": text}
