from __future__ import annotations

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, TypeVar
from urllib.parse import urlsplit

import redis

from ..errors import CacheUnavailable
from ..schemas import CacheHealth

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CACHE_ERRORS = (redis.RedisError, OSError, ValueError, TypeError, CacheUnavailable)


def _normalize_part(part: str | int) -> str:
    if not isinstance(part, str):
        return str(part)
    parsed = urlsplit(part)
    if not parsed.scheme or not parsed.netloc:
        return part
    query = f"?{parsed.query}" if parsed.query else ""
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path.rstrip('/')}{query}"


def cache_key(prefix: str, *parts: str | int) -> str:
    return ":".join([prefix, *(_normalize_part(part) for part in parts)])


def connect_redis(redis_url: str | None) -> redis.Redis | None:
    if not redis_url:
        logger.warning("REDIS_URL not configured, cache will be disabled")
        return None
    return redis.Redis.from_url(redis_url, socket_timeout=5, socket_connect_timeout=10)


class CacheLayer:
    """Best-effort JSON cache in front of Redis.

    Nothing here raises: a missing client or a failing store behaves like a
    miss (get -> None, set/delete -> False). Writes issued by ``cached`` run on
    a private background executor and are never awaited by the caller.
    """

    def __init__(self, client: redis.Redis | None = None, writer: ThreadPoolExecutor | None = None) -> None:
        self.client = client
        self._owns_writer = writer is None
        self._writer = writer or ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-write")

    def close(self) -> None:
        if self._owns_writer:
            self._writer.shutdown(wait=True)
        if self.client is not None:
            try:
                self.client.close()
            except _CACHE_ERRORS as exc:
                logger.debug("Error closing cache client: %s", exc)

    def _require_client(self) -> redis.Redis:
        if self.client is None:
            raise CacheUnavailable("cache client not configured")
        return self.client

    def get(self, key: str) -> Any | None:
        try:
            raw = self._require_client().get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except _CACHE_ERRORS as exc:
            if self.client is not None:
                logger.error("Error getting cache key %s: %s", key, exc)
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            serialized = json.dumps(value, ensure_ascii=False)
            self._require_client().setex(key, max(int(ttl_seconds), 1), serialized)
            return True
        except _CACHE_ERRORS as exc:
            if self.client is not None:
                logger.error("Error setting cache key %s: %s", key, exc)
            return False

    def delete(self, key: str) -> bool:
        try:
            self._require_client().delete(key)
            return True
        except _CACHE_ERRORS as exc:
            if self.client is not None:
                logger.error("Error deleting cache key %s: %s", key, exc)
            return False

    def set_in_background(self, key: str, value: Any, ttl_seconds: int) -> Future | None:
        if self.client is None:
            return None
        try:
            future = self._writer.submit(self.set, key, value, ttl_seconds)
        except RuntimeError as exc:
            # Executor already shut down.
            logger.debug("Skipping cache write for %s: %s", key, exc)
            return None
        future.add_done_callback(lambda done: _log_write_failure(key, done))
        return future

    def cached(self, key: str, compute_fn: Callable[[], T], ttl_seconds: int) -> T:
        hit = self.get(key)
        if hit is not None:
            return hit

        result = compute_fn()
        self.set_in_background(key, result, ttl_seconds)
        return result

    def health(self) -> CacheHealth:
        if self.client is None:
            return CacheHealth(available=False, connected=False, error="cache client not configured")
        try:
            pong = self.client.ping()
        except _CACHE_ERRORS as exc:
            return CacheHealth(available=False, connected=False, error=str(exc) or type(exc).__name__)
        return CacheHealth(available=True, connected=bool(pong), error=None if pong else "ping failed")


def _log_write_failure(key: str, future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Error caching result for %s: %s", key, exc)
    elif future.result() is False:
        logger.debug("Cache write for %s was not stored", key)
