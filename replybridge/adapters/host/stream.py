from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Mapping

from replybridge.adapters.config.schema import TransportConfig
from replybridge.core.errors import ChannelClosedError, ChannelConnectionError
from replybridge.core.host import ChannelHandler


class StreamChannelPort:
    """Newline-delimited JSON channel over an asyncio stream pair."""

    def __init__(self, name: str, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.name = name
        self._reader = reader
        self._writer = writer
        self._closed = False
        self._logger = logging.getLogger("replybridge.host.stream")

    @property
    def closed(self) -> bool:
        return self._closed or self._writer.is_closing()

    def post_message(self, message: Mapping[str, Any]) -> None:
        if self.closed:
            raise ChannelClosedError(f"channel {self.name} is closed")
        line = json.dumps(message, separators=(",", ":")) + "\n"
        self._writer.write(line.encode("utf-8"))

    async def __aiter__(self) -> AsyncIterator[Any]:
        while not self._closed:
            try:
                line = await self._reader.readline()
            except (ConnectionError, ValueError) as exc:
                self._logger.warning("channel read failed", extra={"channel": self.name, "error": str(exc)})
                break
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                yield json.loads(text)
            except json.JSONDecodeError:
                yield text
        self.disconnect()

    def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()


class StreamChannelServer:
    def __init__(self, config: TransportConfig) -> None:
        self._config = config
        self._server: asyncio.Server | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logging.getLogger("replybridge.host.stream")

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("server not started")
        return int(self._server.sockets[0].getsockname()[1])

    async def start(self, handler: ChannelHandler) -> None:
        if self._server is not None:
            return

        async def _accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            peer = writer.get_extra_info("peername")
            port = StreamChannelPort(f"{peer[0]}:{peer[1]}" if peer else "stream", reader, writer)
            task = asyncio.current_task()
            if task is not None:
                self._tasks.add(task)
            try:
                await handler(port)
            except Exception:
                self._logger.exception("channel handler crashed", extra={"channel": port.name})
            finally:
                port.disconnect()
                if task is not None:
                    self._tasks.discard(task)

        self._server = await asyncio.start_server(
            _accept,
            host=self._config.host,
            port=self._config.port,
            limit=self._config.max_message_bytes,
        )
        self._logger.info("stream transport listening", extra={"host": self._config.host, "port": self.port})

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for task in list(self._tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        await self._server.wait_closed()
        self._server = None


class StreamChannelConnector:
    """Dials the coordinator's stream transport.

    A successful ``probe`` keeps its connection open and the next ``connect``
    adopts it, so readiness polling never shows up as an extra channel on the
    coordinator.
    """

    def __init__(self, host: str, port: int, *, limit: int = 16777216) -> None:
        self._host = host
        self._port = port
        self._limit = limit
        self._warm: tuple[asyncio.StreamReader, asyncio.StreamWriter] | None = None

    async def probe(self) -> bool:
        if self._warm is not None and self._usable(*self._warm):
            return True
        self._drop_warm()
        try:
            self._warm = await self._open()
        except OSError:
            return False
        return True

    async def connect(self, name: str) -> StreamChannelPort:
        warm, self._warm = self._warm, None
        if warm is not None and self._usable(*warm):
            return StreamChannelPort(name, *warm)
        if warm is not None:
            warm[1].close()
        try:
            reader, writer = await self._open()
        except OSError as exc:
            raise ChannelConnectionError(f"cannot reach coordinator at {self._host}:{self._port}: {exc}") from exc
        return StreamChannelPort(name, reader, writer)

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_connection(self._host, self._port, limit=self._limit)

    def _drop_warm(self) -> None:
        warm, self._warm = self._warm, None
        if warm is not None:
            warm[1].close()

    @staticmethod
    def _usable(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> bool:
        return not reader.at_eof() and not writer.is_closing()
