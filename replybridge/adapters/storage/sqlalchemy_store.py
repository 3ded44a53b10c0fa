from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import JSON, DateTime, String, delete, select
from sqlalchemy.engine import Connection, URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from replybridge.adapters.config.schema import StorageConfig
from replybridge.core.errors import StorageError
from replybridge.core.storage import StorageUsage, normalize_keys, serialized_size
from replybridge.shared.datetime_utils import utcnow

KVBase = declarative_base()


class KVRecord(KVBase):
    __tablename__ = "kv_store"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class SQLAlchemyKeyValueStore:
    def __init__(self, config: StorageConfig) -> None:
        self._config = config
        self._database_url: URL = make_url(config.sqlite_url)
        storage_path = self._resolve_storage_path(self._database_url)
        if storage_path:
            self._ensure_storage_dir(storage_path)

        engine_kwargs: dict[str, Any] = {
            "future": True,
            "echo": config.echo,
        }
        if not self._database_url.drivername.startswith("sqlite"):
            engine_kwargs["pool_size"] = config.pool_size

        self._engine: AsyncEngine = create_async_engine(config.sqlite_url, **engine_kwargs)
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
        )

    async def initialize(self) -> None:
        try:
            async with self._engine.begin() as connection:
                await connection.run_sync(self._create_schema)
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to initialize key-value store: {exc}") from exc

    @staticmethod
    def _create_schema(sync_connection: Connection) -> None:
        KVBase.metadata.create_all(sync_connection)

    async def close(self) -> None:
        await self._engine.dispose()

    async def get(self, key: str) -> Any | None:
        try:
            async with self._session_factory() as session:
                record = await session.get(KVRecord, key)
                return None if record is None else record.value
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read key {key!r}: {exc}") from exc

    async def get_all(self) -> Mapping[str, Any]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(KVRecord.key, KVRecord.value))
                return {key: value for key, value in result}
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read key-value store: {exc}") from exc

    async def set(self, key: str, value: Any) -> None:
        try:
            async with self._session_factory() as session:
                record = await session.get(KVRecord, key)
                if record is None:
                    session.add(KVRecord(key=key, value=value, updated_at=utcnow()))
                else:
                    record.value = value
                    record.updated_at = utcnow()
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to write key {key!r}: {exc}") from exc

    async def remove(self, keys: str | Sequence[str]) -> None:
        targets = normalize_keys(keys)
        if not targets:
            return
        try:
            async with self._session_factory() as session:
                await session.execute(delete(KVRecord).where(KVRecord.key.in_(targets)))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to remove {len(targets)} keys: {exc}") from exc

    async def usage(self) -> StorageUsage:
        entries = await self.get_all()
        used = sum(serialized_size(key, value) for key, value in entries.items())
        return StorageUsage(bytes_used=used, quota_bytes=self._config.quota_bytes)

    def _resolve_storage_path(self, url: URL) -> Optional[Path]:
        if url.database and url.drivername.startswith("sqlite") and url.database != ":memory:":
            return Path(url.database)
        return None

    def _ensure_storage_dir(self, path: Path) -> None:
        directory = path.parent
        if directory and not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
