from __future__ import annotations

import asyncio
import time

import pytest

from replybridge.adapters.host.alarms import PersistentAlarmHost
from replybridge.adapters.storage.memory import InMemoryKeyValueStore
from replybridge.core.errors import StorageError
from replybridge.core.host import AlarmInfo


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_periodic_alarm_fires_repeatedly_and_persists_next_run() -> None:
    store = InMemoryKeyValueStore()
    host = PersistentAlarmHost(store)
    fired: list[AlarmInfo] = []

    async def _listener(info: AlarmInfo) -> None:
        fired.append(info)

    host.add_listener(_listener)
    await host.start()
    await host.create("tick", delay_seconds=0.01, period_seconds=0.02)

    await _wait_for(lambda: len(fired) >= 2)
    await host.stop()

    assert all(info.name == "tick" for info in fired)
    persisted = await store.get("alarm.tick")
    assert persisted["periodSeconds"] == 0.02
    assert persisted["scheduledTime"] > fired[0].scheduled_time


@pytest.mark.asyncio
async def test_one_shot_alarm_fires_once_and_is_removed() -> None:
    store = InMemoryKeyValueStore()
    host = PersistentAlarmHost(store)
    fired: list[str] = []

    async def _listener(info: AlarmInfo) -> None:
        fired.append(info.name)

    host.add_listener(_listener)
    await host.start()
    await host.create("once", delay_seconds=0.01)
    await _wait_for(lambda: fired == ["once"])
    await asyncio.sleep(0.03)
    await host.stop()

    assert fired == ["once"]
    assert await host.get("once") is None
    assert await store.get("alarm.once") is None


@pytest.mark.asyncio
async def test_start_restores_persisted_alarms_and_fires_overdue_ones() -> None:
    store = InMemoryKeyValueStore()
    await store.set("alarm.cache-cleanup", {"scheduledTime": time.time() - 60, "periodSeconds": 3600.0})
    await store.set("alarm.broken", "not an alarm")
    host = PersistentAlarmHost(store)
    fired: list[str] = []

    async def _listener(info: AlarmInfo) -> None:
        fired.append(info.name)

    host.add_listener(_listener)
    await host.start()
    await _wait_for(lambda: fired == ["cache-cleanup"])
    await host.stop()

    restored = await host.get("cache-cleanup")
    assert restored is not None
    assert restored.scheduled_time > time.time() + 3000


@pytest.mark.asyncio
async def test_listener_may_recreate_the_alarm_that_fired_it() -> None:
    host = PersistentAlarmHost(InMemoryKeyValueStore())
    fired: list[AlarmInfo] = []

    async def _listener(info: AlarmInfo) -> None:
        fired.append(info)
        if len(fired) == 1:
            await host.clear(info.name)
            await host.create(info.name, delay_seconds=60, period_seconds=120)

    host.add_listener(_listener)
    await host.start()
    await host.create("job", delay_seconds=0.0, period_seconds=0.01)
    await _wait_for(lambda: len(fired) == 1)
    await asyncio.sleep(0.05)
    await host.stop()

    assert len(fired) == 1
    assert (await host.get("job")).period_seconds == 120


@pytest.mark.asyncio
async def test_clear_reports_whether_alarm_existed() -> None:
    host = PersistentAlarmHost(InMemoryKeyValueStore())
    await host.create("x", delay_seconds=10)

    assert await host.clear("x") is True
    assert await host.clear("x") is False


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_other_listeners() -> None:
    host = PersistentAlarmHost(InMemoryKeyValueStore())
    seen: list[str] = []

    async def _broken(info: AlarmInfo) -> None:
        raise RuntimeError("boom")

    async def _healthy(info: AlarmInfo) -> None:
        seen.append(info.name)

    host.add_listener(_broken)
    host.add_listener(_healthy)
    await host.start()
    await host.create("ping", delay_seconds=0.0)
    await _wait_for(lambda: seen == ["ping"])
    await host.stop()


@pytest.mark.asyncio
async def test_failed_persist_still_arms_and_failed_clear_keeps_alarm() -> None:
    class _ReadOnlyStore(InMemoryKeyValueStore):
        async def set(self, key, value) -> None:
            raise StorageError("store unreachable")

        async def remove(self, keys) -> None:
            raise StorageError("store unreachable")

    alarms = PersistentAlarmHost(_ReadOnlyStore(), clock=lambda: 100.0)
    await alarms.start()

    with pytest.raises(StorageError):
        await alarms.create("nightly", delay_seconds=10.0, period_seconds=60.0)
    with pytest.raises(StorageError):
        await alarms.clear("nightly")

    assert await alarms.get("nightly") == AlarmInfo(name="nightly", scheduled_time=110.0, period_seconds=60.0)
    await alarms.stop()
