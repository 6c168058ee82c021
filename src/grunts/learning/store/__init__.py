"""Storage backends for the error knowledge store.

Durable backends (memory, JSON file, SQLite) hold knowledge entries across
sessions; the volatile store (Redis, or in-process) holds per-session error
records with expiry.

Usage:
    from grunts.learning.store import create_backend

    backend = create_backend(KnowledgeConfig(backend="sqlite"))
"""

from grunts.core.config import KnowledgeConfig
from grunts.learning.store.base import KnowledgeBackend
from grunts.learning.store.json_backend import JsonKnowledgeBackend
from grunts.learning.store.memory import InMemoryKnowledgeBackend
from grunts.learning.store.redis_store import RedisVolatileStore
from grunts.learning.store.sqlite_backend import SqliteKnowledgeBackend
from grunts.learning.store.volatile import (
    InProcessVolatileStore,
    VolatileStore,
    VolatileTransaction,
)


def create_backend(config: KnowledgeConfig) -> KnowledgeBackend:
    """Create the durable backend selected by ``config.backend``.

    Raises:
        KnowledgeStoreError: If a file-backed store cannot be opened.
    """
    path = config.get_store_path()
    if config.backend == "json" and path is not None:
        return JsonKnowledgeBackend(path)
    if config.backend == "sqlite" and path is not None:
        return SqliteKnowledgeBackend(path)
    return InMemoryKnowledgeBackend()


__all__ = [
    "InMemoryKnowledgeBackend",
    "InProcessVolatileStore",
    "JsonKnowledgeBackend",
    "KnowledgeBackend",
    "RedisVolatileStore",
    "SqliteKnowledgeBackend",
    "VolatileStore",
    "VolatileTransaction",
    "create_backend",
]
