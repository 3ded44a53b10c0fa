from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Callable, Dict, List

from replybridge.core.errors import StorageError
from replybridge.core.host import AlarmInfo, AlarmListener
from replybridge.core.storage import KeyValueStore


class PersistentAlarmHost:
    """Named alarms whose schedule lives in the key-value store.

    Each alarm is stored as ``{scheduledTime, periodSeconds}`` (epoch seconds)
    under ``<key_prefix><name>`` and re-armed by ``start()``, so a coordinator
    restart keeps the schedule. An alarm whose time passed while nobody was
    running fires as soon as it is restored.

    ``create`` arms the alarm before persisting it, so a store failure still
    leaves the new schedule running in this process and raises ``StorageError``.
    ``clear`` only forgets an alarm once the store has dropped it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key_prefix: str = "alarm.",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._key_prefix = key_prefix
        self._clock = clock
        self._alarms: Dict[str, AlarmInfo] = {}
        self._timers: Dict[str, asyncio.Task[None]] = {}
        self._listeners: List[AlarmListener] = []
        self._dispatch_tasks: set[asyncio.Task[None]] = set()
        self._running = False
        self._logger = logging.getLogger("replybridge.alarms")

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        entries = await self._store.get_all()
        for key, value in entries.items():
            if not key.startswith(self._key_prefix):
                continue
            info = self._decode(key[len(self._key_prefix) :], value)
            if info is None:
                self._logger.warning("dropping unreadable alarm entry", extra={"key": key})
                continue
            self._alarms[info.name] = info
            self._arm(info)
        self._logger.info("alarm host started", extra={"alarms": sorted(self._alarms)})

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._timers.values(), *self._dispatch_tasks]
        self._timers.clear()
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._dispatch_tasks.clear()

    async def create(self, name: str, delay_seconds: float, period_seconds: float | None = None) -> AlarmInfo:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        if period_seconds is not None and period_seconds <= 0:
            raise ValueError("period_seconds must be > 0")
        info = AlarmInfo(name=name, scheduled_time=self._clock() + delay_seconds, period_seconds=period_seconds)
        self._disarm(name)
        self._alarms[name] = info
        if self._running:
            self._arm(info)
        self._logger.debug(
            "alarm created",
            extra={"alarm": name, "delay_seconds": delay_seconds, "period_seconds": period_seconds},
        )
        await self._persist(info)
        return info

    async def clear(self, name: str) -> bool:
        await self._store.remove(self._key(name))
        existed = self._alarms.pop(name, None) is not None
        self._disarm(name)
        return existed

    async def get(self, name: str) -> AlarmInfo | None:
        info = self._alarms.get(name)
        if info is not None:
            return info
        return self._decode(name, await self._store.get(self._key(name)))

    def add_listener(self, listener: AlarmListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: AlarmListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _key(self, name: str) -> str:
        return f"{self._key_prefix}{name}"

    async def _persist(self, info: AlarmInfo) -> None:
        await self._store.set(
            self._key(info.name),
            {"scheduledTime": info.scheduled_time, "periodSeconds": info.period_seconds},
        )

    @staticmethod
    def _decode(name: str, value: Any) -> AlarmInfo | None:
        if not isinstance(value, dict):
            return None
        scheduled = value.get("scheduledTime")
        period = value.get("periodSeconds")
        if not isinstance(scheduled, (int, float)):
            return None
        if period is not None and not isinstance(period, (int, float)):
            return None
        return AlarmInfo(name=name, scheduled_time=float(scheduled), period_seconds=period)

    def _arm(self, info: AlarmInfo) -> None:
        self._disarm(info.name)
        self._timers[info.name] = asyncio.create_task(self._wait_and_fire(info))

    def _disarm(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _wait_and_fire(self, info: AlarmInfo) -> None:
        current = info
        while True:
            await asyncio.sleep(max(current.scheduled_time - self._clock(), 0.0))
            if self._alarms.get(current.name) != current:
                return
            if current.period_seconds is None:
                self._alarms.pop(current.name, None)
                self._timers.pop(current.name, None)
                try:
                    await self._store.remove(self._key(current.name))
                except StorageError:
                    self._logger.exception("failed to drop fired alarm", extra={"alarm": current.name})
                self._dispatch(current)
                return
            fired = current
            current = AlarmInfo(
                name=current.name,
                scheduled_time=self._clock() + current.period_seconds,
                period_seconds=current.period_seconds,
            )
            self._alarms[current.name] = current
            try:
                await self._persist(current)
            except StorageError:
                self._logger.exception("failed to persist alarm schedule", extra={"alarm": current.name})
            self._dispatch(fired)

    def _dispatch(self, info: AlarmInfo) -> None:
        for listener in list(self._listeners):
            task = asyncio.create_task(self._notify(listener, info))
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)

    async def _notify(self, listener: AlarmListener, info: AlarmInfo) -> None:
        try:
            await listener(info)
        except Exception:
            self._logger.exception("alarm listener failed", extra={"alarm": info.name})
