from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence


@dataclass(frozen=True)
class StorageUsage:
    bytes_used: int
    quota_bytes: int

    @property
    def percentage(self) -> float:
        if self.quota_bytes <= 0:
            return 0.0
        return round(self.bytes_used / self.quota_bytes * 100, 2)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def get_all(self) -> Mapping[str, Any]: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def remove(self, keys: str | Sequence[str]) -> None: ...

    async def usage(self) -> StorageUsage: ...


def serialized_size(key: str, value: Any) -> int:
    return len(key.encode("utf-8")) + len(json.dumps(value, separators=(",", ":")).encode("utf-8"))


def normalize_keys(keys: str | Sequence[str]) -> list[str]:
    if isinstance(keys, str):
        return [keys]
    return list(keys)
