from __future__ import annotations

import logging
from typing import Awaitable, Callable

from replybridge.adapters.config.schema import MaintenanceConfig
from replybridge.core.host import AlarmHost, AlarmInfo


class MaintenanceScheduler:
    """Runs cache eviction from a persistent host alarm.

    After ``failure_threshold`` consecutive failures the alarm is recreated
    with the longer backoff period and the failure counter starts over.
    """

    def __init__(
        self,
        alarms: AlarmHost,
        run_eviction: Callable[[], Awaitable[int]],
        config: MaintenanceConfig,
    ) -> None:
        self._alarms = alarms
        self._run_eviction = run_eviction
        self._config = config
        self._consecutive_failures = 0
        self._current_period = config.period_seconds
        self._logger = logging.getLogger("replybridge.maintenance")

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def current_period_seconds(self) -> float:
        return self._current_period

    async def start(self) -> None:
        self._alarms.add_listener(self.handle_alarm)
        existing = await self._alarms.get(self._config.alarm_name)
        if existing is not None:
            self._current_period = existing.period_seconds or self._config.period_seconds
            self._logger.info(
                "maintenance alarm already registered",
                extra={"alarm": existing.name, "period_seconds": self._current_period},
            )
            return
        await self._alarms.create(
            self._config.alarm_name,
            delay_seconds=self._config.initial_delay_seconds,
            period_seconds=self._config.period_seconds,
        )
        self._current_period = self._config.period_seconds
        self._logger.info(
            "maintenance alarm registered",
            extra={"alarm": self._config.alarm_name, "period_seconds": self._current_period},
        )

    async def stop(self) -> None:
        self._alarms.remove_listener(self.handle_alarm)

    async def handle_alarm(self, info: AlarmInfo) -> None:
        if info.name != self._config.alarm_name:
            return
        try:
            removed = await self._run_eviction()
        except Exception:
            self._consecutive_failures += 1
            self._logger.exception(
                "cache eviction failed",
                extra={"consecutive_failures": self._consecutive_failures},
            )
            if self._consecutive_failures >= self._config.failure_threshold:
                try:
                    await self._back_off()
                except Exception:
                    self._logger.exception(
                        "failed to persist backed-off maintenance alarm",
                        extra={"alarm": self._config.alarm_name},
                    )
            return
        self._consecutive_failures = 0
        self._logger.info("cache eviction completed", extra={"removed": removed})

    async def _back_off(self) -> None:
        self._current_period = self._config.backoff_period_seconds
        self._consecutive_failures = 0
        self._logger.warning(
            "maintenance alarm backed off",
            extra={"alarm": self._config.alarm_name, "period_seconds": self._current_period},
        )
        # create replaces the armed alarm even when the store rejects the new schedule
        await self._alarms.create(
            self._config.alarm_name,
            delay_seconds=self._config.backoff_delay_seconds,
            period_seconds=self._config.backoff_period_seconds,
        )
