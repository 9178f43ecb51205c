"""Tests for the retrieval config store and its Redis cache."""

from __future__ import annotations

import json
from typing import Dict, Optional

import pytest
import redis

from wellness_kb.cache import RedisConfigCache
from wellness_kb.config_store import RetrievalConfigStore
from wellness_kb.db import session_scope
from wellness_kb.models import SystemSetting
from wellness_kb.schemas import RetrievalConfig


class DictCache:
    def __init__(self) -> None:
        self.data: Dict[str, dict] = {}
        self.reads = 0

    def get(self, setting_key: str) -> Optional[dict]:
        self.reads += 1
        return self.data.get(setting_key)

    def set(self, setting_key: str, value: dict) -> None:
        self.data[setting_key] = value

    def invalidate(self, setting_key: str) -> None:
        self.data.pop(setting_key, None)


def _write_row(session_factory, value: str) -> None:
    with session_scope(session_factory) as db:
        db.merge(SystemSetting(setting_key="kb_retrieval_config", setting_value=value))


def test_defaults_when_nothing_stored(session_factory) -> None:
    store = RetrievalConfigStore(session_factory)

    config = store.get_retrieval_config()

    assert config == RetrievalConfig(similarity_threshold=0.78, max_chunks=5, use_top_chunks=3, debug_mode=False)
    assert store.has_stored_config() is False


def test_partial_row_is_merged_over_defaults(session_factory) -> None:
    _write_row(session_factory, json.dumps({"similarity_threshold": 0.6}))

    config = RetrievalConfigStore(session_factory).get_retrieval_config()

    assert config.similarity_threshold == 0.6
    assert (config.max_chunks, config.use_top_chunks, config.debug_mode) == (5, 3, False)


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", json.dumps({"similarity_threshold": 7})])
def test_malformed_row_falls_back_to_defaults(session_factory, raw: str) -> None:
    _write_row(session_factory, raw)

    assert RetrievalConfigStore(session_factory).get_retrieval_config() == RetrievalConfig()


def test_set_then_get_round_trips_and_invalidates_cache(session_factory) -> None:
    cache = DictCache()
    store = RetrievalConfigStore(session_factory, cache=cache)
    assert store.get_retrieval_config() == RetrievalConfig()

    store.set_retrieval_config(RetrievalConfig(similarity_threshold=0.5, max_chunks=8, use_top_chunks=4))
    assert "kb_retrieval_config" not in cache.data

    fresh = store.get_retrieval_config()
    assert (fresh.similarity_threshold, fresh.max_chunks, fresh.use_top_chunks) == (0.5, 8, 4)
    assert cache.data["kb_retrieval_config"]["max_chunks"] == 8
    assert store.has_stored_config() is True


def test_cached_value_is_served_without_database(session_factory) -> None:
    cache = DictCache()
    cache.set("kb_retrieval_config", {"similarity_threshold": 0.42, "max_chunks": 2})
    store = RetrievalConfigStore(session_factory, cache=cache)

    config = store.get_retrieval_config()

    assert (config.similarity_threshold, config.max_chunks) == (0.42, 2)


def test_effective_top_chunks_is_capped_by_max_chunks() -> None:
    assert RetrievalConfig(max_chunks=2, use_top_chunks=5).effective_top_chunks == 2
    assert RetrievalConfig(max_chunks=5, use_top_chunks=3).effective_top_chunks == 3


def test_redis_cache_round_trip_and_error_tolerance() -> None:
    class FakeRedis:
        def __init__(self) -> None:
            self.values: Dict[str, str] = {}
            self.ttls: Dict[str, int] = {}

        def get(self, key):
            return self.values.get(key)

        def setex(self, key, ttl, value):
            self.values[key] = value
            self.ttls[key] = ttl

        def delete(self, key):
            self.values.pop(key, None)

    client = FakeRedis()
    cache = RedisConfigCache(client=client, ttl_seconds=30)

    cache.set("kb_retrieval_config", {"max_chunks": 9})
    assert cache.get("kb_retrieval_config") == {"max_chunks": 9}
    assert list(client.ttls.values()) == [30]
    cache.invalidate("kb_retrieval_config")
    assert cache.get("kb_retrieval_config") is None

    class DownRedis:
        def get(self, key):
            raise redis.ConnectionError("refused")

        def setex(self, key, ttl, value):
            raise redis.ConnectionError("refused")

        def delete(self, key):
            raise redis.ConnectionError("refused")

    broken = RedisConfigCache(client=DownRedis())
    assert broken.get("kb_retrieval_config") is None
    broken.set("kb_retrieval_config", {"max_chunks": 9})
    broken.invalidate("kb_retrieval_config")
