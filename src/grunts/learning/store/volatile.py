"""Volatile session storage with key expiry.

Session error records live in a key/value store whose keys expire with the
session TTL. RedisVolatileStore shares a session across processes;
InProcessVolatileStore is the default and the fallback when a configured
store cannot be reached. Anything implementing the VolatileStore protocol
can be plugged in.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Protocol, runtime_checkable


@runtime_checkable
class VolatileTransaction(Protocol):
    """Write operations queued inside ``VolatileStore.transaction()``."""

    def set(self, key: str, value: str, ttl: float | None = None) -> None: ...

    def delete(self, key: str) -> None: ...


@runtime_checkable
class VolatileStore(Protocol):
    """Key/value store with per-key expiry.

    Implementations raise VolatileStoreUnavailableError (or any other
    exception) when the backing service is unreachable; the KnowledgeStore
    then falls back to an in-process store.
    """

    def ping(self) -> bool:
        """Return True when the store is reachable."""
        ...

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl: float | None = None) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self, prefix: str) -> list[str]:
        """Live keys starting with ``prefix``, sorted."""
        ...

    def transaction(self) -> AbstractContextManager[VolatileTransaction]:
        """Group writes so they are applied all together or not at all."""
        ...


class _PendingWrites:
    """Buffer of writes applied when a transaction commits."""

    def __init__(self) -> None:
        self.operations: list[tuple[str, str | None, float | None]] = []

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        self.operations.append((key, value, ttl))

    def delete(self, key: str) -> None:
        self.operations.append((key, None, None))


class InProcessVolatileStore:
    """Thread-safe in-process key/value store with TTL expiry.

    Expired keys are dropped lazily on access.

    Args:
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.RLock()

    def _expires_at(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def _is_live(self, expires_at: float | None) -> bool:
        return expires_at is None or expires_at > self._clock()

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if not self._is_live(expires_at):
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expires_at(ttl))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str) -> list[str]:
        with self._lock:
            expired = [k for k, (_, exp) in self._data.items() if not self._is_live(exp)]
            for key in expired:
                del self._data[key]
            return sorted(k for k in self._data if k.startswith(prefix))

    @contextmanager
    def transaction(self) -> Iterator[_PendingWrites]:
        """Queue writes and apply them under one lock on successful exit.

        If the block raises, nothing is written.
        """
        pending = _PendingWrites()
        yield pending
        with self._lock:
            for key, value, ttl in pending.operations:
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = (value, self._expires_at(ttl))

    def __len__(self) -> int:
        return len(self.keys(""))
