from __future__ import annotations

import pytest

from replybridge.adapters.config.schema import MaintenanceConfig
from replybridge.adapters.host.alarms import PersistentAlarmHost
from replybridge.adapters.storage.memory import InMemoryKeyValueStore
from replybridge.app.maintenance_scheduler import MaintenanceScheduler
from replybridge.core.errors import StorageError
from replybridge.core.host import AlarmInfo


class _Eviction:
    def __init__(self) -> None:
        self.fail = False
        self.calls = 0

    async def __call__(self) -> int:
        self.calls += 1
        if self.fail:
            raise StorageError("store unreachable")
        return 2


def _fired(name: str = "cache-cleanup") -> AlarmInfo:
    return AlarmInfo(name=name, scheduled_time=0.0, period_seconds=3600.0)


@pytest.mark.asyncio
async def test_start_registers_periodic_alarm() -> None:
    alarms = PersistentAlarmHost(InMemoryKeyValueStore(), clock=lambda: 1000.0)
    scheduler = MaintenanceScheduler(alarms, _Eviction(), MaintenanceConfig())

    await scheduler.start()

    info = await alarms.get("cache-cleanup")
    assert info == AlarmInfo(name="cache-cleanup", scheduled_time=1300.0, period_seconds=3600.0)
    assert scheduler.current_period_seconds == 3600.0


@pytest.mark.asyncio
async def test_start_keeps_an_existing_lengthened_alarm() -> None:
    store = InMemoryKeyValueStore()
    await store.set("alarm.cache-cleanup", {"scheduledTime": 5000.0, "periodSeconds": 14400.0})
    alarms = PersistentAlarmHost(store, clock=lambda: 1000.0)
    scheduler = MaintenanceScheduler(alarms, _Eviction(), MaintenanceConfig())

    await scheduler.start()

    info = await alarms.get("cache-cleanup")
    assert info is not None
    assert info.period_seconds == 14400.0
    assert info.scheduled_time == 5000.0
    assert scheduler.current_period_seconds == 14400.0


@pytest.mark.asyncio
async def test_three_consecutive_failures_lengthen_the_period() -> None:
    alarms = PersistentAlarmHost(InMemoryKeyValueStore(), clock=lambda: 0.0)
    eviction = _Eviction()
    scheduler = MaintenanceScheduler(alarms, eviction, MaintenanceConfig())
    await scheduler.start()
    eviction.fail = True

    await scheduler.handle_alarm(_fired())
    await scheduler.handle_alarm(_fired())
    assert scheduler.consecutive_failures == 2
    assert (await alarms.get("cache-cleanup")).period_seconds == 3600.0

    await scheduler.handle_alarm(_fired())

    info = await alarms.get("cache-cleanup")
    assert info.period_seconds == 14400.0
    assert info.period_seconds > MaintenanceConfig().period_seconds
    assert info.scheduled_time == 7200.0
    assert scheduler.current_period_seconds == 14400.0
    assert scheduler.consecutive_failures == 0


@pytest.mark.asyncio
async def test_success_resets_failure_counter() -> None:
    alarms = PersistentAlarmHost(InMemoryKeyValueStore(), clock=lambda: 0.0)
    eviction = _Eviction()
    scheduler = MaintenanceScheduler(alarms, eviction, MaintenanceConfig())
    await scheduler.start()

    eviction.fail = True
    await scheduler.handle_alarm(_fired())
    await scheduler.handle_alarm(_fired())
    eviction.fail = False
    await scheduler.handle_alarm(_fired())
    eviction.fail = True
    await scheduler.handle_alarm(_fired())

    assert scheduler.consecutive_failures == 1
    assert (await alarms.get("cache-cleanup")).period_seconds == 3600.0


@pytest.mark.asyncio
async def test_other_alarms_are_ignored() -> None:
    alarms = PersistentAlarmHost(InMemoryKeyValueStore())
    eviction = _Eviction()
    scheduler = MaintenanceScheduler(alarms, eviction, MaintenanceConfig())

    await scheduler.handle_alarm(_fired("something-else"))

    assert eviction.calls == 0


class _FlakyStore(InMemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise StorageError("store unreachable")

    async def get_all(self):
        self._check()
        return await super().get_all()

    async def set(self, key, value) -> None:
        self._check()
        await super().set(key, value)

    async def remove(self, keys) -> None:
        self._check()
        await super().remove(keys)


@pytest.mark.asyncio
async def test_backoff_survives_an_unreachable_store() -> None:
    store = _FlakyStore()
    alarms = PersistentAlarmHost(store, clock=lambda: 0.0)

    async def _evict_from_store() -> int:
        return len(await store.get_all())

    scheduler = MaintenanceScheduler(alarms, _evict_from_store, MaintenanceConfig())
    await alarms.start()
    await scheduler.start()
    store.down = True

    for _ in range(3):
        await scheduler.handle_alarm(_fired())

    info = await alarms.get("cache-cleanup")
    assert info == AlarmInfo(name="cache-cleanup", scheduled_time=7200.0, period_seconds=14400.0)
    assert scheduler.current_period_seconds == 14400.0
    assert scheduler.consecutive_failures == 0

    store.down = False
    await scheduler.handle_alarm(_fired())
    assert scheduler.consecutive_failures == 0
    await scheduler.stop()
    await alarms.stop()
