from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest

from replybridge.adapters.config.schema import Settings


class _Probe:
    def __init__(self) -> None:
        self.started = 0
        self.stopped = 0

    async def start(self, *_args) -> None:
        self.started += 1

    async def stop(self) -> None:
        self.stopped += 1


class _Logger:
    def __init__(self) -> None:
        self.records: list[tuple[str, dict]] = []

    def info(self, message: str, *_args, extra: dict | None = None, **_kwargs) -> None:
        self.records.append((message, extra or {}))


@pytest.mark.asyncio
async def test_run_starts_and_stops_all_services(monkeypatch: pytest.MonkeyPatch) -> None:
    from replybridge.app import daemon as daemon_module

    server_probe = _Probe()
    logger = _Logger()
    storage_calls: list[str] = []
    served_with: list[object] = []

    class _FakeCoordinator(_Probe):
        async def serve_channel(self, port) -> None:
            del port

    coordinator = _FakeCoordinator()

    class _FakeContainer:
        @classmethod
        def configure(cls) -> None:
            return None

        @classmethod
        def get_logger(cls) -> _Logger:
            return logger

        @classmethod
        def get_settings(cls) -> Settings:
            return Settings()

        @classmethod
        def get_coordinator(cls) -> _FakeCoordinator:
            return coordinator

        @classmethod
        async def initialize_storage(cls) -> None:
            storage_calls.append("initialize")

        @classmethod
        async def shutdown_storage(cls) -> None:
            storage_calls.append("shutdown")

    class _FakeServer:
        def __init__(self, config) -> None:
            del config

        async def start(self, handler) -> None:
            served_with.append(handler)
            await server_probe.start()

        async def stop(self) -> None:
            await server_probe.stop()

    @asynccontextmanager
    async def _fake_shutdown(services, logger):
        del logger
        stop_event = asyncio.Event()
        stop_event.set()
        try:
            yield stop_event
        finally:
            for service in services:
                await service.stop()

    monkeypatch.setattr(daemon_module, "AppContainer", _FakeContainer)
    monkeypatch.setattr(daemon_module, "StreamChannelServer", _FakeServer)
    monkeypatch.setattr(daemon_module, "_graceful_shutdown", _fake_shutdown)

    await daemon_module.run()

    assert coordinator.started == 1
    assert coordinator.stopped == 1
    assert server_probe.started == 1
    assert server_probe.stopped == 1
    assert served_with == [coordinator.serve_channel]
    assert storage_calls == ["initialize", "shutdown"]
    boot = dict(logger.records)["booting replybridge"]
    assert boot["environment"] == "development"
    assert boot["storage_backend"] == "sqlite"


@pytest.mark.asyncio
async def test_run_stops_started_services_when_storage_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    from replybridge.app import daemon as daemon_module

    server_probe = _Probe()
    coordinator_probe = _Probe()

    class _FakeContainer:
        @classmethod
        def configure(cls) -> None:
            return None

        @classmethod
        def get_logger(cls) -> _Logger:
            return _Logger()

        @classmethod
        def get_settings(cls) -> Settings:
            return Settings()

        @classmethod
        def get_coordinator(cls) -> _Probe:
            return coordinator_probe

        @classmethod
        async def initialize_storage(cls) -> None:
            raise RuntimeError("database unavailable")

        @classmethod
        async def shutdown_storage(cls) -> None:
            raise AssertionError("storage should not be shut down after a failed start")

    @asynccontextmanager
    async def _fake_shutdown(services, logger):
        del logger
        try:
            yield asyncio.Event()
        finally:
            for service in services:
                await service.stop()

    monkeypatch.setattr(daemon_module, "AppContainer", _FakeContainer)
    monkeypatch.setattr(daemon_module, "StreamChannelServer", lambda _config: server_probe)
    monkeypatch.setattr(daemon_module, "_graceful_shutdown", _fake_shutdown)

    with pytest.raises(RuntimeError, match="database unavailable"):
        await daemon_module.run()

    assert coordinator_probe.started == 0
    assert server_probe.started == 0
    assert coordinator_probe.stopped == 1
    assert server_probe.stopped == 1
