from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Mapping, assert_never

from replybridge.app.handlers import CoordinatorHandlers
from replybridge.core.envelopes import (
    BUSINESS_TYPES,
    BusinessMessage,
    ClearCacheMessage,
    ConnectionEstablishedEnvelope,
    GenerateReplyMessage,
    GetCachedContextMessage,
    GetCredentialMessage,
    GetStorageInfoMessage,
    MessageType,
    PongEnvelope,
    ResponseEnvelope,
    SetCachedContextMessage,
    SetCredentialMessage,
    parse_business_message,
    request_id_of,
)
from replybridge.core.errors import ChannelClosedError, ProtocolError
from replybridge.core.host import ChannelPort

INVALID_FORMAT = "invalid format"
UNKNOWN_MESSAGE_TYPE = "unknown message type"


class MessageRouter:
    """Coordinator side of the channel protocol.

    Every accepted channel gets a ``CONNECTION_ESTABLISHED`` envelope, pings
    are answered inline, and each business message is handled in its own
    task so a slow reply generation never blocks the channel.
    """

    def __init__(self, handlers: CoordinatorHandlers) -> None:
        self._handlers = handlers
        self._active: set[ChannelPort] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logging.getLogger("replybridge.router")

    @property
    def active_channels(self) -> int:
        return len(self._active)

    async def serve(self, port: ChannelPort) -> None:
        self._active.add(port)
        self._logger.info("channel connected", extra={"channel": port.name, "active": len(self._active)})
        try:
            self._post(port, ConnectionEstablishedEnvelope().to_wire())
            async for raw in port:
                if self._is_ping(raw):
                    self._post(port, self._pong(raw))
                    continue
                task = asyncio.create_task(self._respond(port, raw))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            self._active.discard(port)
            self._logger.info("channel disconnected", extra={"channel": port.name, "active": len(self._active)})

    async def handle(self, raw: Any) -> Dict[str, Any]:
        if not isinstance(raw, Mapping) or not isinstance(raw.get("type"), str):
            return ResponseEnvelope.failure(request_id_of(raw), INVALID_FORMAT).to_wire()
        if self._is_ping(raw):
            return self._pong(raw)
        request_id = request_id_of(raw)
        if raw["type"] not in BUSINESS_TYPES:
            self._logger.warning("unknown message type", extra={"type": raw["type"]})
            return ResponseEnvelope.failure(request_id, UNKNOWN_MESSAGE_TYPE).to_wire()
        try:
            message = parse_business_message(raw)
        except ProtocolError as exc:
            self._logger.warning("rejected malformed envelope", extra={"type": raw["type"], "error": str(exc)})
            return ResponseEnvelope.failure(request_id, INVALID_FORMAT).to_wire()
        if message.request_id is None:
            return ResponseEnvelope.failure(None, INVALID_FORMAT).to_wire()
        return (await self.dispatch(message)).to_wire()

    async def dispatch(self, message: BusinessMessage) -> ResponseEnvelope:
        try:
            payload = await self._invoke(message)
        except Exception as exc:
            self._logger.exception(
                "handler failed",
                extra={"type": message.type, "request_id": message.request_id},
            )
            return ResponseEnvelope.failure(message.request_id, str(exc) or type(exc).__name__)
        return ResponseEnvelope.ok(message.request_id, payload)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        for port in list(self._active):
            port.disconnect()
        self._active.clear()

    async def _invoke(self, message: BusinessMessage) -> Dict[str, Any]:
        if isinstance(message, GetCredentialMessage):
            return await self._handlers.get_credential(message)
        if isinstance(message, SetCredentialMessage):
            return await self._handlers.set_credential(message)
        if isinstance(message, GetCachedContextMessage):
            return await self._handlers.get_cached_context(message)
        if isinstance(message, SetCachedContextMessage):
            return await self._handlers.set_cached_context(message)
        if isinstance(message, ClearCacheMessage):
            return await self._handlers.clear_cache(message)
        if isinstance(message, GetStorageInfoMessage):
            return await self._handlers.get_storage_info(message)
        if isinstance(message, GenerateReplyMessage):
            return await self._handlers.generate_reply(message)
        assert_never(message)

    async def _respond(self, port: ChannelPort, raw: Any) -> None:
        response = await self.handle(raw)
        self._post(port, response)

    def _post(self, port: ChannelPort, message: Dict[str, Any]) -> None:
        try:
            port.post_message(message)
        except ChannelClosedError:
            self._logger.debug(
                "dropping response for closed channel",
                extra={"channel": port.name, "request_id": message.get("requestId")},
            )

    @staticmethod
    def _is_ping(raw: Any) -> bool:
        return isinstance(raw, Mapping) and raw.get("type") == MessageType.PING.value

    @staticmethod
    def _pong(raw: Mapping[str, Any]) -> Dict[str, Any]:
        return PongEnvelope(request_id=request_id_of(raw)).to_wire()
