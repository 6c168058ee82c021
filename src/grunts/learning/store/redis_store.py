"""Redis-backed volatile session store.

Lets several processes validating workers share one session: error records,
category indexes and fingerprints live in Redis with the session TTL.

Usage:
    volatile = RedisVolatileStore.from_url("redis://localhost:6379/0")
    store = KnowledgeStore(config, volatile=volatile)

or set ``knowledge.volatile_url`` in the engine configuration.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import redis

from grunts.core.errors import VolatileStoreUnavailableError

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _expiry(ttl: float | None) -> int | None:
    # SET EX takes whole seconds, at least 1
    return None if ttl is None else max(1, math.ceil(ttl))


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class _PipelineWrites:
    """Writes queued on a MULTI/EXEC pipeline."""

    def __init__(self, pipeline: Any) -> None:
        self._pipeline = pipeline

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        self._pipeline.set(key, value, ex=_expiry(ttl))

    def delete(self, key: str) -> None:
        self._pipeline.delete(key)


class RedisVolatileStore:
    """VolatileStore over a redis-py client.

    Connection errors propagate as redis exceptions; the KnowledgeStore
    treats them as an unreachable store and falls back to in-process
    session storage.

    Args:
        client: A ``redis.Redis`` (or compatible) client.
    """

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, connect_timeout: float | None = None) -> RedisVolatileStore:
        """Create a store from a ``redis://`` URL. No connection is made yet."""
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout,
        )
        return cls(client)

    def ping(self) -> bool:
        """True when the server answers.

        Raises:
            VolatileStoreUnavailableError: If the server cannot be reached.
        """
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            raise VolatileStoreUnavailableError(f"Redis is unreachable: {e}") from e

    def get(self, key: str) -> str | None:
        value = self.client.get(key)
        return None if value is None else _text(value)

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        self.client.set(key, value, ex=_expiry(ttl))

    def delete(self, key: str) -> bool:
        return bool(self.client.delete(key))

    def keys(self, prefix: str) -> list[str]:
        """Live keys starting with ``prefix``, sorted. Uses SCAN, not KEYS."""
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"
        return sorted(_text(key) for key in self.client.scan_iter(match=pattern))

    @contextmanager
    def transaction(self) -> Iterator[_PipelineWrites]:
        """Queue writes on a MULTI/EXEC pipeline, executed on successful exit."""
        pipeline = self.client.pipeline(transaction=True)
        try:
            yield _PipelineWrites(pipeline)
            pipeline.execute()
        finally:
            pipeline.reset()


__all__ = ["RedisVolatileStore"]
