from __future__ import annotations

import logging

from replybridge.adapters.config.schema import Settings
from replybridge.app.context_cache import ContextCache
from replybridge.app.handlers import CoordinatorHandlers
from replybridge.app.maintenance_scheduler import MaintenanceScheduler
from replybridge.app.message_router import MessageRouter
from replybridge.core.host import AlarmHost, ChannelPort
from replybridge.core.storage import KeyValueStore
from replybridge.llm.reply_client import ReplyClient


class Coordinator:
    def __init__(
        self,
        settings: Settings,
        *,
        store: KeyValueStore,
        alarms: AlarmHost,
        reply_client: ReplyClient,
    ) -> None:
        self._settings = settings
        self._store = store
        self._alarms = alarms
        self._reply_client = reply_client
        self.cache = ContextCache(store, settings.cache)
        self.handlers = CoordinatorHandlers(
            store,
            self.cache,
            reply_client,
            credential_key=settings.storage.credential_key,
        )
        self.router = MessageRouter(self.handlers)
        self.scheduler = MaintenanceScheduler(alarms, self.cache.evict_expired, settings.maintenance)
        self._started = False
        self._logger = logging.getLogger("replybridge.coordinator")

    async def start(self) -> None:
        if self._started:
            return
        await self._alarms.start()
        if self._settings.maintenance.enabled:
            await self.scheduler.start()
        try:
            await self.cache.evict_expired()
        except Exception:
            self._logger.exception("startup cache eviction failed")
        self._started = True
        self._logger.info("coordinator started", extra={"maintenance": self._settings.maintenance.enabled})

    async def serve_channel(self, port: ChannelPort) -> None:
        await self.router.serve(port)

    async def stop(self) -> None:
        await self.router.stop()
        await self.scheduler.stop()
        await self._alarms.stop()
        await self._reply_client.close()
        self._started = False
        self._logger.info("coordinator stopped")
