from __future__ import annotations

import inspect
import logging
from pathlib import Path
from typing import Optional

from replybridge.adapters.config.loader import load_settings
from replybridge.adapters.config.schema import Settings
from replybridge.adapters.host.alarms import PersistentAlarmHost
from replybridge.adapters.logging.setup import configure_logging
from replybridge.adapters.storage.memory import InMemoryKeyValueStore
from replybridge.adapters.storage.sqlalchemy_store import SQLAlchemyKeyValueStore
from replybridge.app.coordinator import Coordinator
from replybridge.core.storage import KeyValueStore
from replybridge.llm.reply_client import ReplyClient


class AppContainer:
    _settings: Optional[Settings] = None
    _logger: Optional[logging.Logger] = None
    _store: Optional[KeyValueStore] = None
    _alarm_host: Optional[PersistentAlarmHost] = None
    _reply_client: Optional[ReplyClient] = None
    _coordinator: Optional[Coordinator] = None

    @classmethod
    def configure(cls, config_path: Path | None = None) -> None:
        cls._settings = load_settings(config_path)
        cls._settings.logging.log_level = cls._settings.runtime.log_level
        cls._logger = configure_logging(cls._settings.logging)
        storage_config = cls._settings.storage
        if storage_config.backend == "memory":
            cls._store = InMemoryKeyValueStore(quota_bytes=storage_config.quota_bytes)
        else:
            cls._store = SQLAlchemyKeyValueStore(storage_config)
        cls._alarm_host = PersistentAlarmHost(cls._store)
        cls._reply_client = ReplyClient(cls._settings.llm)
        cls._coordinator = Coordinator(
            cls._settings,
            store=cls._store,
            alarms=cls._alarm_host,
            reply_client=cls._reply_client,
        )

    @classmethod
    def get_settings(cls) -> Settings:
        if cls._settings is None:
            raise RuntimeError("container not configured")
        return cls._settings

    @classmethod
    def get_logger(cls) -> logging.Logger:
        if cls._logger is None:
            raise RuntimeError("container not configured")
        return cls._logger

    @classmethod
    def get_store(cls) -> KeyValueStore:
        if cls._store is None:
            raise RuntimeError("key-value store not configured")
        return cls._store

    @classmethod
    def get_alarm_host(cls) -> PersistentAlarmHost:
        if cls._alarm_host is None:
            raise RuntimeError("alarm host not configured")
        return cls._alarm_host

    @classmethod
    def get_reply_client(cls) -> ReplyClient:
        if cls._reply_client is None:
            raise RuntimeError("reply client not configured")
        return cls._reply_client

    @classmethod
    def get_coordinator(cls) -> Coordinator:
        if cls._coordinator is None:
            raise RuntimeError("coordinator not configured")
        return cls._coordinator

    @classmethod
    async def initialize_storage(cls) -> None:
        await cls._initialize_backend(cls.get_store())

    @classmethod
    async def shutdown_storage(cls) -> None:
        close = getattr(cls._store, "close", None)
        if callable(close):
            result = close()
            if inspect.isawaitable(result):
                await result

    @classmethod
    async def _initialize_backend(cls, backend: object) -> None:
        init = getattr(backend, "initialize", None)
        if callable(init):
            result = init()
            if inspect.isawaitable(result):
                await result
