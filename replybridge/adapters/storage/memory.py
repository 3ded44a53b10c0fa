from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Sequence

from replybridge.core.storage import StorageUsage, normalize_keys, serialized_size


def _copy(value: Any) -> Any:
    return json.loads(json.dumps(value))


class InMemoryKeyValueStore:
    def __init__(self, quota_bytes: int = 5242880) -> None:
        self._data: Dict[str, Any] = {}
        self._quota_bytes = quota_bytes

    async def get(self, key: str) -> Any | None:
        if key not in self._data:
            return None
        return _copy(self._data[key])

    async def get_all(self) -> Mapping[str, Any]:
        return {key: _copy(value) for key, value in self._data.items()}

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = _copy(value)

    async def remove(self, keys: str | Sequence[str]) -> None:
        for key in normalize_keys(keys):
            self._data.pop(key, None)

    async def usage(self) -> StorageUsage:
        used = sum(serialized_size(key, value) for key, value in self._data.items())
        return StorageUsage(bytes_used=used, quota_bytes=self._quota_bytes)
