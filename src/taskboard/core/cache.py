"""Read-through cache for task queries.

Key construction and invalidation rules live in one table, ``CACHE_KEYS``.
Backends only need ``get``/``set``/``delete_pattern``; ``TaskCache`` turns
every backend failure into a miss so the cache can never break a request.
"""

import fnmatch
import json
import logging
import string
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    template: str
    invalidate: tuple[str, ...]
    stats: bool = False


CACHE_KEYS: dict[str, CacheKey] = {
    "tasks": CacheKey(
        template="tasks:{user_id}:{filters}:{pagination}",
        invalidate=("tasks:{user_id}:*",),
    ),
    # Admin lists span every task, so any write clears all of them.
    "admin_tasks": CacheKey(
        template="admin_tasks:{user_id}:{filters}:{pagination}",
        invalidate=("admin_tasks:*",),
    ),
    "task": CacheKey(
        template="task:{task_id}:{user_id}",
        invalidate=("task:*:{user_id}", "task:{task_id}:*"),
    ),
    "task_stats": CacheKey(
        template="task_stats:{user_id}:{project}",
        invalidate=("task_stats:{user_id}:*",),
        stats=True,
    ),
    "project_tasks": CacheKey(
        template="project_tasks:{project_id}:{user_id}",
        invalidate=("project_tasks:{project_id}:*",),
    ),
}

# Placeholder name in an invalidation template -> invalidate() keyword.
_SCOPES = {"user_id": "user_ids", "task_id": "task_ids", "project_id": "project_ids"}


class CacheStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete_pattern(self, pattern: str) -> int: ...


class MemoryCacheStore:
    """Process-local cache backend with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (self._clock() + ttl_seconds, value)

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class RedisCacheStore:
    """Redis-backed cache with a bounded retry around each call."""

    def __init__(
        self,
        redis_url: str,
        retries: int = 3,
        backoff: float = 0.05,
        client: redis.Redis | None = None,
    ):
        self.redis_url = redis_url
        self.retries = max(1, retries)
        self.backoff = backoff
        self.client = client or redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

    def get(self, key: str) -> str | None:
        return self._call("GET", key, lambda: self.client.get(key))

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._call("SETEX", key, lambda: self.client.setex(key, ttl_seconds, value))

    def delete_pattern(self, pattern: str) -> int:
        def _delete():
            keys = list(self.client.scan_iter(match=pattern, count=500))
            if not keys:
                return 0
            return int(self.client.delete(*keys))

        return self._call("DEL pattern", pattern, _delete)

    def _call(self, op: str, key: str, fn: Callable[[], Any]) -> Any:
        delay = self.backoff
        for attempt in range(1, self.retries + 1):
            try:
                return fn()
            except (RedisConnectionError, RedisTimeoutError) as e:
                if attempt == self.retries:
                    raise
                logger.debug(
                    "Redis %s for '%s' failed (attempt %d/%d): %s",
                    op, key, attempt, self.retries, e,
                )
                time.sleep(delay)
                delay *= 2


class TaskCache:
    """JSON read-through cache over a ``CacheStore``."""

    def __init__(self, store: CacheStore, ttl: int = 300, stats_ttl: int = 600):
        self.store = store
        self.ttl = ttl
        self.stats_ttl = stats_ttl

    def key(self, kind: str, **parts: Any) -> str:
        return CACHE_KEYS[kind].template.format(**parts)

    def ttl_for(self, kind: str) -> int:
        return self.stats_ttl if CACHE_KEYS[kind].stats else self.ttl

    def get(self, key: str) -> Any | None:
        try:
            raw = self.store.get(key)
        except Exception:
            logger.warning("Cache get failed for key %s", key, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    def set(self, kind: str, key: str, value: Any) -> None:
        try:
            self.store.set(key, json.dumps(value, sort_keys=True), self.ttl_for(kind))
        except Exception:
            logger.warning("Cache set failed for key %s", key, exc_info=True)

    def get_or_load(self, kind: str, key: str, loader: Callable[[], Any]) -> Any:
        """Return the cached value for ``key`` or compute, store and return it."""
        cached = self.get(key)
        if cached is not None:
            logger.debug("Cache hit %s", key)
            return cached
        value = loader()
        self.set(kind, key, value)
        return value

    def invalidate(
        self,
        user_ids: Iterable[str | None] = (),
        task_ids: Iterable[str | None] = (),
        project_ids: Iterable[str | None] = (),
    ) -> list[str]:
        """Delete every cached entry that may reflect the given scopes.

        Returns the patterns that were cleared.
        """
        scopes = {
            "user_ids": sorted({u for u in user_ids if u}),
            "task_ids": sorted({t for t in task_ids if t}),
            "project_ids": sorted({p for p in project_ids if p}),
        }
        patterns: list[str] = []
        for entry in CACHE_KEYS.values():
            for template in entry.invalidate:
                patterns.extend(_expand(template, scopes))

        seen = set()
        for pattern in patterns:
            if pattern in seen:
                continue
            seen.add(pattern)
            try:
                self.store.delete_pattern(pattern)
            except Exception:
                logger.warning("Cache invalidation failed for pattern %s", pattern, exc_info=True)
        return list(dict.fromkeys(patterns))


def _expand(template: str, scopes: dict[str, list[str]]) -> list[str]:
    names = [name for _, name, _, _ in string.Formatter().parse(template) if name]
    if not names:
        return [template]
    # Templates carry a single scope placeholder.
    values = scopes[_SCOPES[names[0]]]
    return [template.format(**{names[0]: v}) for v in values]


def create_cache(config) -> TaskCache:
    """Build the cache configured by ``TB_REDIS_URL`` (in-memory otherwise)."""
    if config.redis_url:
        store: CacheStore = RedisCacheStore(config.redis_url, retries=config.cache_retries)
        logger.info("Using Redis cache at %s", config.redis_url)
    else:
        store = MemoryCacheStore()
    return TaskCache(store, ttl=config.cache_ttl, stats_ttl=config.stats_cache_ttl)
