"""Redis read-through cache for the retrieval configuration.

Provides:
- get_redis: Cached Redis client from REDIS_URL with decode_responses.
- _key_for_setting: Namespaced cache key for a settings row.
- RedisConfigCache: get/set/invalidate JSON config payloads with TTL from
  settings.CACHE_TTL_SECONDS.

Cache errors never fail a request: they are logged and treated as a miss.
"""
import json
import logging
from typing import Optional, Protocol

import redis

from wellness_kb.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Return a cached Redis client configured from settings.REDIS_URL.

    Returns:
        redis.Redis: Client with decode_responses=True.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _key_for_setting(setting_key: str) -> str:
    return f"kb:settings:v1:{setting_key}"


class ConfigCache(Protocol):
    def get(self, setting_key: str) -> Optional[dict]:
        ...

    def set(self, setting_key: str, value: dict) -> None:
        ...

    def invalidate(self, setting_key: str) -> None:
        ...


class RedisConfigCache:
    """JSON payload cache keyed by setting name."""

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self._client = client
        self.ttl_seconds = ttl_seconds or settings.CACHE_TTL_SECONDS

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    def get(self, setting_key: str) -> Optional[dict]:
        """Return the cached payload, or None on miss, bad JSON or Redis errors."""
        try:
            raw = self.client.get(_key_for_setting(setting_key))
        except redis.RedisError as exc:
            logger.warning("Config cache read failed for %s: %s", setting_key, exc)
            return None
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return value if isinstance(value, dict) else None

    def set(self, setting_key: str, value: dict) -> None:
        try:
            self.client.setex(_key_for_setting(setting_key), self.ttl_seconds, json.dumps(value))
        except redis.RedisError as exc:
            logger.warning("Config cache write failed for %s: %s", setting_key, exc)

    def invalidate(self, setting_key: str) -> None:
        try:
            self.client.delete(_key_for_setting(setting_key))
        except redis.RedisError as exc:
            logger.warning("Config cache invalidation failed for %s: %s", setting_key, exc)
