"""
Read-through response cache in front of the catalog read endpoints.

Entries live in Redis under ``api:<path>?<query>`` with a fixed TTL. The cache
is best effort: a Redis failure is logged and the request is served uncached.
"""

import json
import logging
from typing import Any, Callable, Optional

import redis
from fastapi import Request
from fastapi.encoders import jsonable_encoder

log = logging.getLogger(__name__)

KEY_PREFIX = "api:"
CACHE_ERRORS = (redis.RedisError, OSError, TypeError, ValueError)


class ResponseCache:
    def __init__(self, client: Optional[Any] = None):
        self.client = client

    @classmethod
    def from_url(cls, url: Optional[str]) -> "ResponseCache":
        if not url:
            log.info("REDIS_URL not set, running without cache")
            return cls(None)
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        )
        return cls(client)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    @staticmethod
    def key_for(request: Request) -> str:
        key = KEY_PREFIX + request.url.path
        if request.url.query:
            key += "?" + request.url.query
        return key

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            raw = self.client.get(key)
            return json.loads(raw) if raw else None
        except CACHE_ERRORS as exc:
            log.error("Redis cache read failed for %s: %s", key, exc)
            return None

    def set(self, key: str, ttl: int, value: Any) -> None:
        if not self.enabled:
            return
        try:
            self.client.setex(key, ttl, json.dumps(value))
        except CACHE_ERRORS as exc:
            log.error("Redis cache write failed for %s: %s", key, exc)

    def fetch(self, request: Request, ttl: int, producer: Callable[[], Any]) -> Any:
        key = self.key_for(request)
        cached = self.get(key)
        if cached is not None:
            log.debug("Cache hit for %s", key)
            return cached
        log.debug("Cache miss for %s", key)
        value = jsonable_encoder(producer())
        self.set(key, ttl, value)
        return value

    def clear_pattern(self, pattern: str) -> int:
        if not self.enabled:
            return 0
        try:
            keys = list(self.client.scan_iter(match=KEY_PREFIX + pattern))
            if keys:
                self.client.delete(*keys)
                log.info("Cleared %d cache keys matching %s", len(keys), pattern)
            return len(keys)
        except CACHE_ERRORS as exc:
            log.error("Redis cache clear failed for %s: %s", pattern, exc)
            return 0


def get_cache(request: Request) -> ResponseCache:
    return request.app.state.cache
