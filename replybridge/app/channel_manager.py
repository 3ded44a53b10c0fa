from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, Mapping
from uuid import uuid4

from replybridge.adapters.config.schema import ChannelConfig
from replybridge.core.envelopes import Envelope, MessageType, PingEnvelope, ResponseEnvelope, envelope_to_wire
from replybridge.core.errors import (
    ChannelClosedError,
    ChannelConnectionError,
    ProtocolError,
    RequestTimeoutError,
)
from replybridge.core.host import ChannelConnector, ChannelPort
from replybridge.shared.datetime_utils import epoch_ms
from replybridge.shared.retries import Sleep

_CHANNEL_ERRORS = (ChannelConnectionError, TimeoutError, OSError)


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class _QueuedRequest:
    envelope: Dict[str, Any]
    future: asyncio.Future[ResponseEnvelope]
    timeout_seconds: float


@dataclass
class _PendingRequest:
    future: asyncio.Future[ResponseEnvelope]
    timer: asyncio.TimerHandle
    message_type: str
    timeout_seconds: float


class ChannelManager:
    """Foreground end of the coordinator channel.

    Outgoing requests wait in a FIFO queue until a channel is up, then move to
    the pending table keyed by ``requestId`` until their response arrives or
    their own deadline passes. Losing the channel triggers a bounded
    reconnect; pending requests are left to their deadlines.
    """

    def __init__(
        self,
        connector: ChannelConnector,
        config: ChannelConfig,
        *,
        sleep: Sleep | None = None,
    ) -> None:
        self._connector = connector
        self._config = config
        self._sleep = sleep or asyncio.sleep
        self._state = ChannelState.DISCONNECTED
        self._queue: Deque[_QueuedRequest] = deque()
        self._pending: Dict[str, _PendingRequest] = {}
        self._port: ChannelPort | None = None
        self._handshake: asyncio.Future[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._closing = False
        self._logger = logging.getLogger("replybridge.channel")
        self.last_pong_at: int | None = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    async def ensure_connection(self) -> None:
        if self._state is ChannelState.CONNECTED:
            return
        if self._closing:
            raise ChannelConnectionError("channel manager is closed")
        if self._state is ChannelState.FAILED:
            self._set_state(ChannelState.DISCONNECTED)
        await asyncio.shield(self._start_connect())

    async def send(
        self,
        message: Envelope | Mapping[str, Any],
        *,
        timeout_seconds: float | None = None,
    ) -> ResponseEnvelope:
        if self._closing:
            raise ChannelConnectionError("channel manager is closed")
        envelope = envelope_to_wire(message)
        timeout = timeout_seconds or self._timeout_for(envelope["type"])
        future: asyncio.Future[ResponseEnvelope] = asyncio.get_running_loop().create_future()
        self._queue.append(_QueuedRequest(envelope=envelope, future=future, timeout_seconds=timeout))
        if self._state is ChannelState.CONNECTED:
            self._flush()
        else:
            if self._state is ChannelState.FAILED:
                self._set_state(ChannelState.DISCONNECTED)
            self._start_connect()
        return await future

    async def close(self) -> None:
        self._closing = True
        tasks = [task for task in (self._connect_task, self._reader_task, self._heartbeat_task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._connect_task = self._reader_task = self._heartbeat_task = None
        port, self._port = self._port, None
        if port is not None:
            port.disconnect()
        self._reject_queue("channel manager closed")
        for request_id, entry in list(self._pending.items()):
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(ChannelConnectionError(f"channel manager closed before {request_id} completed"))
        self._pending.clear()
        self._set_state(ChannelState.DISCONNECTED)

    def _timeout_for(self, message_type: str) -> float:
        if message_type == MessageType.GENERATE_REPLY.value:
            return self._config.generate_timeout_seconds
        return self._config.request_timeout_seconds

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        self._logger.debug("channel state changed", extra={"from": self._state.value, "to": state.value})
        self._state = state

    def _start_connect(self, *, reconnect: bool = False) -> asyncio.Task[None]:
        if self._connect_task is None or self._connect_task.done():
            cycle = self._reconnect() if reconnect else self._connect()
            self._connect_task = asyncio.create_task(cycle)
            self._connect_task.add_done_callback(self._on_connect_done)
        return self._connect_task

    def _on_connect_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("channel connection failed", extra={"error": str(exc)})

    async def _connect(self) -> None:
        self._set_state(ChannelState.CONNECTING)
        if not await self._await_readiness():
            reason = f"coordinator not ready after {self._config.readiness_probe_attempts} probes"
            self._fail(reason)
            raise ChannelConnectionError(reason)
        try:
            await self._open_channel()
            return
        except _CHANNEL_ERRORS as exc:
            self._logger.warning("initial connection failed", extra={"error": str(exc)})
        await self._reconnect()

    async def _reconnect(self) -> None:
        last_error: BaseException | None = None
        for attempt in range(1, self._config.reconnect_max_attempts + 1):
            self._set_state(ChannelState.RECONNECTING)
            delay = min(
                self._config.reconnect_base_delay_seconds * (2 ** (attempt - 1)),
                self._config.reconnect_max_delay_seconds,
            )
            self._logger.info("reconnecting", extra={"attempt": attempt, "delay_seconds": delay})
            await self._sleep(delay)
            try:
                await self._open_channel()
                return
            except _CHANNEL_ERRORS as exc:
                last_error = exc
                self._logger.warning("reconnect attempt failed", extra={"attempt": attempt, "error": str(exc)})
        reason = f"reconnection failed after {self._config.reconnect_max_attempts} attempts: {last_error}"
        self._fail(reason)
        raise ChannelConnectionError(reason)

    async def _await_readiness(self) -> bool:
        attempts = self._config.readiness_probe_attempts
        for attempt in range(1, attempts + 1):
            if await self._connector.probe():
                return True
            if attempt < attempts:
                await self._sleep(self._config.readiness_probe_interval_seconds)
        return False

    async def _open_channel(self) -> None:
        port = await self._connector.connect(self._config.name)
        handshake: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._handshake = handshake
        self._port = port
        self._reader_task = asyncio.create_task(self._read_loop(port))
        try:
            await asyncio.wait_for(handshake, timeout=self._config.handshake_timeout_seconds)
        except BaseException:
            self._detach(port)
            raise
        if self._port is not port or port.closed:
            self._detach(port)
            raise ChannelConnectionError("channel closed right after handshake")
        self._set_state(ChannelState.CONNECTED)
        self._logger.info("channel connected", extra={"channel": port.name, "queued": len(self._queue)})
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(port))
        self._flush()

    def _detach(self, port: ChannelPort) -> None:
        if self._port is port:
            self._port = None
        port.disconnect()

    def _fail(self, reason: str) -> None:
        self._set_state(ChannelState.FAILED)
        self._logger.error("channel failed", extra={"reason": reason, "queued": len(self._queue)})
        self._reject_queue(reason)

    def _reject_queue(self, reason: str) -> None:
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(ChannelConnectionError(reason))

    def _flush(self) -> None:
        port = self._port
        loop = asyncio.get_running_loop()
        while self._queue and self._state is ChannelState.CONNECTED and port is not None and not port.closed:
            item = self._queue.popleft()
            if item.future.done():
                continue
            envelope = item.envelope
            request_id = envelope.get("requestId")
            if not isinstance(request_id, str) or not request_id:
                request_id = uuid4().hex
                envelope["requestId"] = request_id
            if request_id in self._pending:
                item.future.set_exception(ProtocolError(f"duplicate requestId {request_id}"))
                continue
            timer = loop.call_later(item.timeout_seconds, self._expire_request, request_id)
            self._pending[request_id] = _PendingRequest(
                future=item.future,
                timer=timer,
                message_type=envelope["type"],
                timeout_seconds=item.timeout_seconds,
            )
            try:
                port.post_message(envelope)
            except ChannelClosedError:
                timer.cancel()
                del self._pending[request_id]
                self._queue.appendleft(item)
                break

    def _expire_request(self, request_id: str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        self._logger.warning(
            "request timed out",
            extra={"request_id": request_id, "type": entry.message_type, "timeout_seconds": entry.timeout_seconds},
        )
        if not entry.future.done():
            entry.future.set_exception(
                RequestTimeoutError(
                    f"{entry.message_type} request timed out after {entry.timeout_seconds}s",
                    request_id=request_id,
                    timeout_seconds=entry.timeout_seconds,
                )
            )

    async def _read_loop(self, port: ChannelPort) -> None:
        try:
            async for raw in port:
                self._on_message(raw)
        except Exception:
            self._logger.exception("channel read loop crashed", extra={"channel": port.name})
        finally:
            self._on_channel_lost(port)

    def _on_message(self, raw: Any) -> None:
        if not isinstance(raw, Mapping):
            self._logger.debug("ignoring non-object message")
            return
        kind = raw.get("type")
        if kind == MessageType.CONNECTION_ESTABLISHED.value:
            if self._handshake is not None and not self._handshake.done():
                self._handshake.set_result(None)
            return
        if kind == MessageType.PONG.value:
            self.last_pong_at = epoch_ms()
            return
        request_id = raw.get("requestId")
        entry = self._pending.pop(request_id, None) if isinstance(request_id, str) else None
        if entry is None:
            self._logger.debug("discarding response without pending request", extra={"request_id": request_id})
            return
        entry.timer.cancel()
        if entry.future.done():
            return
        try:
            entry.future.set_result(ResponseEnvelope.from_wire(raw))
        except ProtocolError as exc:
            entry.future.set_exception(exc)

    def _on_channel_lost(self, port: ChannelPort) -> None:
        if port is not self._port:
            return
        self._port = None
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(ChannelConnectionError("channel closed during handshake"))
            return
        if self._closing or self._state is not ChannelState.CONNECTED:
            return
        self._logger.warning("channel lost", extra={"channel": port.name, "pending": len(self._pending)})
        self._set_state(ChannelState.RECONNECTING)
        self._start_connect(reconnect=True)

    async def _heartbeat_loop(self, port: ChannelPort) -> None:
        while not port.closed:
            await asyncio.sleep(self._config.heartbeat_interval_seconds)
            if port.closed:
                return
            try:
                port.post_message(PingEnvelope().to_wire())
            except ChannelClosedError:
                return
