from replybridge.adapters.storage.memory import InMemoryKeyValueStore
from replybridge.adapters.storage.sqlalchemy_store import SQLAlchemyKeyValueStore

__all__ = [
    "InMemoryKeyValueStore",
    "SQLAlchemyKeyValueStore",
]
