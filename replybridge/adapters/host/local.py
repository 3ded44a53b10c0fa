from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Mapping

from replybridge.core.errors import ChannelClosedError, ChannelConnectionError
from replybridge.core.host import ChannelHandler

_CLOSED = object()


class LocalChannelPort:
    def __init__(self, name: str) -> None:
        self.name = name
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._peer: LocalChannelPort | None = None
        self._closed = False

    @classmethod
    def pair(cls, name: str) -> tuple["LocalChannelPort", "LocalChannelPort"]:
        left = cls(name)
        right = cls(name)
        left._peer = right
        right._peer = left
        return left, right

    @property
    def closed(self) -> bool:
        return self._closed

    def post_message(self, message: Mapping[str, Any]) -> None:
        if self._closed or self._peer is None:
            raise ChannelClosedError(f"channel {self.name} is closed")
        # structured clone: the receiver never shares objects with the sender
        self._peer._inbox.put_nowait(json.loads(json.dumps(message)))

    async def __aiter__(self) -> AsyncIterator[Any]:
        while True:
            item = await self._inbox.get()
            if item is _CLOSED:
                return
            yield item

    def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(_CLOSED)
        peer = self._peer
        if peer is not None and not peer._closed:
            peer._closed = True
            peer._inbox.put_nowait(_CLOSED)


class LocalChannelHost:
    """In-process port broker standing in for the browser runtime.

    Foreground agents use it as their ``ChannelConnector``; the coordinator
    registers its channel handler with ``listen``. ``suspend`` mimics the
    runtime terminating an idle coordinator: the handler goes away and every
    open channel is dropped.
    """

    def __init__(self) -> None:
        self._handler: ChannelHandler | None = None
        self._ports: set[LocalChannelPort] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logging.getLogger("replybridge.host.local")
        self.connect_attempts = 0

    @property
    def listening(self) -> bool:
        return self._handler is not None

    def listen(self, handler: ChannelHandler) -> None:
        self._handler = handler

    def suspend(self) -> None:
        self._handler = None
        self.drop_channels()

    def drop_channels(self) -> None:
        for port in list(self._ports):
            port.disconnect()
        self._ports.clear()

    async def probe(self) -> bool:
        return self._handler is not None

    async def connect(self, name: str) -> LocalChannelPort:
        self.connect_attempts += 1
        handler = self._handler
        if handler is None:
            raise ChannelConnectionError("coordinator is not running")
        foreground, coordinator = LocalChannelPort.pair(name)
        self._ports.add(coordinator)
        task = asyncio.create_task(self._serve(handler, coordinator))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return foreground

    async def close(self) -> None:
        self.suspend()
        for task in list(self._tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def _serve(self, handler: ChannelHandler, port: LocalChannelPort) -> None:
        try:
            await handler(port)
        except Exception:
            self._logger.exception("channel handler crashed", extra={"channel": port.name})
        finally:
            self._ports.discard(port)
            port.disconnect()
