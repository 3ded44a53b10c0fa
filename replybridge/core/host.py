from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol


class ChannelPort(Protocol):
    name: str

    @property
    def closed(self) -> bool: ...

    def post_message(self, message: Mapping[str, Any]) -> None: ...

    def __aiter__(self) -> AsyncIterator[Any]: ...

    def disconnect(self) -> None: ...


ChannelHandler = Callable[[ChannelPort], Awaitable[None]]


class ChannelConnector(Protocol):
    async def probe(self) -> bool: ...

    async def connect(self, name: str) -> ChannelPort: ...


@dataclass(frozen=True)
class AlarmInfo:
    name: str
    scheduled_time: float
    period_seconds: float | None = None


AlarmListener = Callable[[AlarmInfo], Awaitable[None]]


class AlarmHost(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def create(self, name: str, delay_seconds: float, period_seconds: float | None = None) -> AlarmInfo: ...

    async def clear(self, name: str) -> bool: ...

    async def get(self, name: str) -> AlarmInfo | None: ...

    def add_listener(self, listener: AlarmListener) -> None: ...

    def remove_listener(self, listener: AlarmListener) -> None: ...
