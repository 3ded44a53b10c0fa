import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import Any

from replybridge.adapters.container import AppContainer
from replybridge.adapters.host.stream import StreamChannelServer


async def run() -> None:
    AppContainer.configure()
    logger = AppContainer.get_logger()
    settings = AppContainer.get_settings()
    logger.info(
        "booting replybridge",
        extra={
            "component": "daemon",
            "environment": settings.runtime.environment,
            "storage_backend": settings.storage.backend,
            "model": settings.llm.model,
        },
    )
    coordinator = AppContainer.get_coordinator()
    server = StreamChannelServer(settings.transport)

    services: list[Any] = [server, coordinator]

    async with _graceful_shutdown(services, logger) as stop_event:
        await AppContainer.initialize_storage()
        logger.info("starting coordinator", extra={"component": "coordinator"})
        await coordinator.start()
        logger.info("starting stream transport", extra={"component": "transport"})
        await server.start(coordinator.serve_channel)
        logger.info("daemon running in foreground", extra={"component": "daemon"})
        await stop_event.wait()
    await AppContainer.shutdown_storage()


@asynccontextmanager
async def _graceful_shutdown(services: list, logger: logging.Logger):
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal(_: int) -> None:
        logger.info("received stop signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig)

    try:
        yield stop_event
    finally:
        logger.info("shutting down services", extra={"component": "daemon"})
        for service in services:
            await service.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
