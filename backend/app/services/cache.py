from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Sequence

import redis

from app.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)


class CacheBackend:
    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        raise NotImplementedError


class RedisCache(CacheBackend):
    def __init__(self, redis_url: str):
        self.client = redis.Redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=1, socket_timeout=2)
        self.client.ping()

    def get(self, key: str) -> Any:
        raw = self.client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        raw = json.dumps(value, default=str)
        if ttl_seconds:
            self.client.setex(key, ttl_seconds, raw)
        else:
            self.client.set(key, raw)


class InMemoryCache(CacheBackend):
    def __init__(self, max_entries: int = 2048):
        self._store: OrderedDict[str, tuple[float | None, Any]] = OrderedDict()
        self._max_entries = max(1, int(max_entries))
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            data = self._store.get(key)
            if data is None:
                return None
            expire_at, value = data
            if expire_at is not None and expire_at < time.time():
                self._store.pop(key, None)
                return None
            self._store.move_to_end(key)
            return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expire_at = time.time() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._store[key] = (expire_at, value)
            self._store.move_to_end(key)
            while len(self._store) > self._max_entries:
                self._store.popitem(last=False)


def matrix_cache_key(
    mode: str,
    profile: str,
    coordinates: Sequence[tuple[float, float]],
    *,
    sources: Sequence[int] | None = None,
    destinations: Sequence[int] | None = None,
    annotations: str = "duration,distance",
) -> str:
    """Stable key for one matrix request; coordinates are rounded to ~1 m.

    `mode` keeps straight-line estimates and live TrackAsia results apart.
    """
    points = ";".join(f"{round(lat, 5)},{round(lon, 5)}" for lat, lon in coordinates)
    src = ";".join(str(i) for i in sources) if sources is not None else "*"
    dst = ";".join(str(i) for i in destinations) if destinations is not None else "*"
    digest = hashlib.sha256(f"{points}|{src}|{dst}|{annotations}".encode("utf-8")).hexdigest()
    return f"distance_matrix:{mode}:{profile}:{digest}"


_CACHE: CacheBackend | None = None


def get_cache() -> CacheBackend:
    global _CACHE
    if _CACHE is not None:
        return _CACHE

    settings = get_settings()
    try:
        _CACHE = RedisCache(settings.redis_url)
    except Exception:  # noqa: BLE001
        LOGGER.info("Redis unavailable at %s; using in-memory cache", settings.redis_url)
        _CACHE = InMemoryCache()
    return _CACHE


def reset_cache() -> None:
    global _CACHE
    _CACHE = None
