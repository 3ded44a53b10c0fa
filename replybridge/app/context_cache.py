from __future__ import annotations

import logging
from typing import Any, Callable

from replybridge.adapters.config.schema import CacheConfig
from replybridge.core.storage import KeyValueStore
from replybridge.shared.datetime_utils import epoch_ms


class ContextCache:
    """Per-thread conversation context with an expiry stamp.

    Entries are stored as ``{value, expiresAt}`` under
    ``<prefix>_<scope>_<threadId>``; ``expiresAt`` is epoch milliseconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: CacheConfig,
        *,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        self._store = store
        self._prefix = config.prefix
        self._default_ttl_ms = int(config.ttl_seconds * 1000)
        self._clock = clock
        self._logger = logging.getLogger("replybridge.cache")

    def key_for(self, scope: str, thread_id: str) -> str:
        return f"{self._prefix}_{scope}_{thread_id}"

    def is_cache_key(self, key: str) -> bool:
        return key.startswith(f"{self._prefix}_")

    async def get(self, scope: str, thread_id: str) -> Any | None:
        key = self.key_for(scope, thread_id)
        entry = await self._store.get(key)
        if entry is None:
            return None
        if not isinstance(entry, dict) or self._is_expired(entry):
            await self._store.remove(key)
            return None
        return entry.get("value")

    async def set(self, scope: str, thread_id: str, value: Any, ttl_seconds: float | None = None) -> int:
        ttl_ms = self._default_ttl_ms if ttl_seconds is None else int(ttl_seconds * 1000)
        expires_at = self._clock() + ttl_ms
        await self._store.set(self.key_for(scope, thread_id), {"value": value, "expiresAt": expires_at})
        return expires_at

    async def evict_expired(self) -> int:
        entries = await self._store.get_all()
        expired = [
            key
            for key, entry in entries.items()
            if self.is_cache_key(key) and isinstance(entry, dict) and self._is_expired(entry)
        ]
        if expired:
            await self._store.remove(expired)
        self._logger.info("cache eviction finished", extra={"removed": len(expired)})
        return len(expired)

    async def clear_all(self) -> int:
        entries = await self._store.get_all()
        keys = [key for key in entries if self.is_cache_key(key)]
        if keys:
            await self._store.remove(keys)
        return len(keys)

    def _is_expired(self, entry: dict[str, Any]) -> bool:
        expires_at = entry.get("expiresAt")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return False
        return expires_at < self._clock()
