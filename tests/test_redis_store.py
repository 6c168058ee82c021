"""Tests for the Redis-backed volatile session store."""

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import Any

import pytest
import redis

from grunts.core.config import KnowledgeConfig
from grunts.core.errors import VolatileStoreUnavailableError
from grunts.learning.knowledge import KnowledgeStore
from grunts.learning.store import InProcessVolatileStore, RedisVolatileStore, VolatileStore


def _redis_glob(pattern: str) -> re.Pattern[str]:
    """Compile a SCAN MATCH pattern (with backslash escapes) to a regex."""
    parts: list[str] = []
    chars = iter(pattern)
    for ch in chars:
        if ch == "\\":
            parts.append(re.escape(next(chars, "\\")))
        elif ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


class FakePipeline:
    """Queues writes until execute(), like a MULTI/EXEC pipeline."""

    def __init__(self, client: FakeRedis) -> None:
        self.client = client
        self.queued: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.reset_calls = 0

    def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.queued.append(("set", (key, value), {"ex": ex}))

    def delete(self, key: str) -> None:
        self.queued.append(("delete", (key,), {}))

    def execute(self) -> list[Any]:
        self.client.check()
        results = [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.queued]
        self.queued.clear()
        return results

    def reset(self) -> None:
        self.reset_calls += 1
        self.queued.clear()


class FakeRedis:
    """Dictionary-backed stand-in for redis.Redis with decode_responses=True."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int | None] = {}
        self.patterns: list[str] = []
        self.pipelines: list[FakePipeline] = []
        self.down = False

    def check(self) -> None:
        if self.down:
            raise redis.exceptions.ConnectionError("Connection refused")

    def ping(self) -> bool:
        self.check()
        return True

    def get(self, key: str) -> str | None:
        self.check()
        return self.data.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.check()
        self.data[key] = value
        self.expiry[key] = ex
        return True

    def delete(self, key: str) -> int:
        self.check()
        self.expiry.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    def scan_iter(self, match: str) -> Iterator[str]:
        self.check()
        self.patterns.append(match)
        for key in list(self.data):
            if _redis_glob(match).match(key):
                yield key

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        assert transaction
        pipeline = FakePipeline(self)
        self.pipelines.append(pipeline)
        return pipeline


@pytest.fixture
def client() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def volatile(client: FakeRedis) -> RedisVolatileStore:
    return RedisVolatileStore(client)  # type: ignore[arg-type]


class TestRedisVolatileStore:
    """Mapping of the session store operations onto Redis commands."""

    def test_satisfies_protocol(self, volatile: RedisVolatileStore) -> None:
        assert isinstance(volatile, VolatileStore)

    def test_set_get_delete(self, volatile: RedisVolatileStore) -> None:
        volatile.set("a", "1")

        assert volatile.get("a") == "1"
        assert volatile.delete("a") is True
        assert volatile.delete("a") is False
        assert volatile.get("a") is None

    @pytest.mark.parametrize(
        ("ttl", "expected"),
        [(None, None), (60, 60), (2.5, 3), (0.2, 1)],
    )
    def test_ttl_sent_as_whole_seconds(
        self, volatile: RedisVolatileStore, client: FakeRedis, ttl: float | None, expected: int | None
    ) -> None:
        volatile.set("k", "v", ttl=ttl)
        assert client.expiry["k"] == expected

    def test_keys_uses_scan_with_prefix(
        self, volatile: RedisVolatileStore, client: FakeRedis
    ) -> None:
        for key in ("grunts:s:b", "grunts:s:a", "grunts:t:c"):
            client.set(key, "v")

        assert volatile.keys("grunts:s:") == ["grunts:s:a", "grunts:s:b"]
        assert client.patterns == ["grunts:s:*"]

    def test_keys_escapes_glob_characters(
        self, volatile: RedisVolatileStore, client: FakeRedis
    ) -> None:
        client.set("grunts:[x]:1", "v")
        client.set("grunts:x:1", "v")

        assert volatile.keys("grunts:[x]:") == ["grunts:[x]:1"]
        assert client.patterns == [r"grunts:\[x\]:*"]

    def test_transaction_executes_on_exit(
        self, volatile: RedisVolatileStore, client: FakeRedis
    ) -> None:
        client.set("old", "v")

        with volatile.transaction() as tx:
            tx.set("new", "v", 60)
            tx.delete("old")
            assert client.get("new") is None

        assert client.data == {"new": "v"}
        assert client.expiry["new"] == 60
        assert client.pipelines[0].reset_calls == 1

    def test_transaction_discarded_on_error(
        self, volatile: RedisVolatileStore, client: FakeRedis
    ) -> None:
        with pytest.raises(ValueError), volatile.transaction() as tx:
            tx.set("a", "1")
            raise ValueError("abort")

        assert client.data == {}
        assert client.pipelines[0].reset_calls == 1

    def test_ping_unreachable_raises(
        self, volatile: RedisVolatileStore, client: FakeRedis
    ) -> None:
        client.down = True

        with pytest.raises(VolatileStoreUnavailableError, match="unreachable"):
            volatile.ping()

    def test_from_url_builds_client(self) -> None:
        store = RedisVolatileStore.from_url("redis://localhost:6379/3", connect_timeout=0.5)

        kwargs = store.client.connection_pool.connection_kwargs
        assert kwargs["db"] == 3
        assert kwargs["decode_responses"] is True
        assert kwargs["socket_connect_timeout"] == 0.5


class TestKnowledgeStoreOnRedis:
    """KnowledgeStore with Redis session storage."""

    def test_capture_writes_session_keys(
        self, volatile: RedisVolatileStore, client: FakeRedis
    ) -> None:
        config = KnowledgeConfig(session_ttl_seconds=600)
        store = KnowledgeStore(config, volatile=volatile, session_id="s1")

        capture = store.record_error("w-1", "Phaser is not defined")

        prefix = "grunts:errors:s1:"
        assert set(client.data) == {
            f"{prefix}errors:{capture.error_id}",
            f"{prefix}category:reference:{capture.error_id}",
            f"{prefix}fingerprint:{capture.error_id}",
        }
        assert set(client.expiry.values()) == {600}

    def test_fix_learned_through_redis_records(self, volatile: RedisVolatileStore) -> None:
        store = KnowledgeStore(KnowledgeConfig(), volatile=volatile)
        capture = store.record_error("w-1", "Cannot resolve module 'phaser'")

        store.record_fix(capture.error_id, "npm install phaser", "w-1")

        suggestion = store.suggest_fix("Cannot resolve module phaser")
        assert suggestion is not None
        assert suggestion.description == "npm install phaser"
        assert store.analyze_session().resolved_errors == 1

    def test_end_session_clears_only_own_keys(
        self, volatile: RedisVolatileStore, client: FakeRedis
    ) -> None:
        client.set("grunts:errors:other:errors:x", "{}")
        store = KnowledgeStore(KnowledgeConfig(), volatile=volatile, session_id="mine")
        store.record_error("w-1", "Phaser is not defined")

        store.end_session()

        assert list(client.data) == ["grunts:errors:other:errors:x"]

    def test_outage_mid_session_degrades(
        self, volatile: RedisVolatileStore, client: FakeRedis
    ) -> None:
        store = KnowledgeStore(KnowledgeConfig(), volatile=volatile)
        store.record_error("w-1", "Cannot resolve module 'phaser'")

        client.down = True
        capture = store.record_error("w-1", "Phaser is not defined")
        entry = store.record_fix(capture.error_id, "import Phaser", "w-1")

        assert entry is not None
        assert store.suggest_fix("Phaser is not defined") is not None

    def test_down_at_start_falls_back(self, volatile: RedisVolatileStore, client: FakeRedis) -> None:
        client.down = True
        store = KnowledgeStore(KnowledgeConfig(), volatile=volatile)

        store.record_error("w-1", "Phaser is not defined")

        assert client.data == {}
        assert store.analyze_session().total_errors == 1


class TestVolatileUrl:
    """Selecting Redis through configuration."""

    def test_unreachable_url_falls_back(self) -> None:
        config = KnowledgeConfig(
            volatile_url="redis://127.0.0.1:1/0", volatile_timeout_seconds=0.5
        )
        store = KnowledgeStore(config)

        assert isinstance(store._volatile, InProcessVolatileStore)
        assert store.record_error("w-1", "Phaser is not defined").error_id

    def test_invalid_url_falls_back(self) -> None:
        store = KnowledgeStore(KnowledgeConfig(volatile_url="ftp://example.com"))

        assert isinstance(store._volatile, InProcessVolatileStore)

    def test_reachable_url_uses_redis(
        self, client: FakeRedis, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        urls: list[str] = []

        def from_url(url: str, connect_timeout: float | None = None) -> RedisVolatileStore:
            urls.append(url)
            return RedisVolatileStore(client)  # type: ignore[arg-type]

        monkeypatch.setattr(RedisVolatileStore, "from_url", staticmethod(from_url))
        store = KnowledgeStore(KnowledgeConfig(volatile_url="redis://cache:6379/0"))

        store.record_error("w-1", "Phaser is not defined")

        assert urls == ["redis://cache:6379/0"]
        assert isinstance(store._volatile, RedisVolatileStore)
        assert client.data
