"""Persistent decision cache with tag-based invalidation.

Every cached permission decision is stored under the configured prefix and
grouped by the ``teams`` and ``permissions`` tags, plus a per user/team tag,
so that any role, group or membership mutation can drop it in one call.

Providers:
    MemoryCacheProvider: process-local, for single-process deployments and tests.
        Caches built from settings share one instance per process.
    RedisCacheProvider: shared across processes through redis-py.

If caching is disabled, or the provider raises ``CacheUnavailable``,
``PermissionCache.remember`` calls the producer directly.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any, Protocol, TypeVar

import redis

from fastapi_teams.exceptions import CacheUnavailable, ConfigurationError
from fastapi_teams.settings import TeamsSettings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

CACHE_TAGS: tuple[str, ...] = ("teams", "permissions")

_MISSING: Any = object()


def fingerprint(*parts: Any) -> str:
    """Deterministic hash over JSON-serializable call arguments."""
    payload = json.dumps(parts, default=str, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()


def subject_tag(user_id: Any, team_id: Any) -> str:
    return f"team_user:{team_id}:{user_id}"


class CacheProvider(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any, ttl: int, tags: Iterable[str] = ()) -> None: ...

    def delete(self, key: str) -> None: ...

    def flush_tags(self, tags: Iterable[str]) -> None: ...

    def flush_prefix(self, prefix: str) -> None: ...


class MemoryCacheProvider:
    """Thread-safe in-process cache with expiry and tag index."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, tuple[float, Any]] = {}
        self._tags: dict[str, set[str]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: int, tags: Iterable[str] = ()) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def flush_tags(self, tags: Iterable[str]) -> None:
        with self._lock:
            dropped: set[str] = set()
            for tag in tags:
                dropped |= self._tags.pop(tag, set())
            for key in dropped:
                self._entries.pop(key, None)
            for tag in list(self._tags):
                self._tags[tag] -= dropped
                if not self._tags[tag]:
                    del self._tags[tag]

    def flush_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k.startswith(prefix)]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tags.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCacheProvider:
    """Redis-backed cache; tags are kept as redis sets of member keys."""

    def __init__(self, client: redis.Redis, tag_namespace: str = "teams_tags") -> None:
        self.client = client
        self.tag_namespace = tag_namespace

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisCacheProvider:
        return cls(redis.Redis.from_url(url, encoding="utf-8", decode_responses=True), **kwargs)

    def _tag_key(self, tag: str) -> str:
        return f"{self.tag_namespace}:{tag}"

    def get(self, key: str, default: Any = None) -> Any:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            raise CacheUnavailable(f"Cache get failed for {key}: {exc}") from exc
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int, tags: Iterable[str] = ()) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.set(key, json.dumps(value), ex=ttl)
            for tag in tags:
                pipe.sadd(self._tag_key(tag), key)
            pipe.execute()
        except redis.RedisError as exc:
            raise CacheUnavailable(f"Cache set failed for {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise CacheUnavailable(f"Cache delete failed for {key}: {exc}") from exc

    def flush_tags(self, tags: Iterable[str]) -> None:
        try:
            for tag in tags:
                tag_key = self._tag_key(tag)
                members = self.client.smembers(tag_key)
                if members:
                    self.client.delete(*members)
                self.client.delete(tag_key)
        except redis.RedisError as exc:
            raise CacheUnavailable(f"Cache flush failed: {exc}") from exc

    def flush_prefix(self, prefix: str) -> None:
        try:
            keys = list(self.client.scan_iter(match=f"{prefix}*"))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as exc:
            raise CacheUnavailable(f"Cache flush failed: {exc}") from exc


_memory_provider: MemoryCacheProvider | None = None


def get_memory_provider() -> MemoryCacheProvider:
    """Process-wide in-memory store shared by every ``PermissionCache``."""
    global _memory_provider

    if _memory_provider is None:
        _memory_provider = MemoryCacheProvider()
    return _memory_provider


def build_provider(settings: TeamsSettings) -> CacheProvider:
    if settings.cache_store == "memory":
        return get_memory_provider()
    if settings.cache_store == "redis":
        return RedisCacheProvider.from_url(settings.redis_url)
    raise ConfigurationError(f"Unknown cache store '{settings.cache_store}'.")


class PermissionCache:
    """Prefixed, tagged get-or-compute cache for permission decisions.

    Args:
        settings: Cache configuration; defaults to the environment.
        provider: Storage backend; built from ``settings.cache_store`` if omitted.
    """

    def __init__(self, settings: TeamsSettings | None = None, provider: CacheProvider | None = None) -> None:
        self.settings = settings or get_settings()
        self._provider = provider

    @property
    def enabled(self) -> bool:
        return self.settings.cache_enabled

    @property
    def provider(self) -> CacheProvider:
        if self._provider is None:
            self._provider = build_provider(self.settings)
        return self._provider

    def _full_key(self, key: str) -> str:
        return f"{self.settings.cache_prefix}:{key}"

    def _tags(self, extra: Iterable[str]) -> tuple[str, ...]:
        if not self.settings.cache_tags:
            return ()
        return CACHE_TAGS + tuple(extra)

    def remember(self, key: str, producer: Callable[[], T], ttl: int | None = None, tags: Iterable[str] = ()) -> T:
        """Return the cached value for ``key`` or compute, store and return it."""
        if not self.enabled:
            return producer()

        full_key = self._full_key(key)
        try:
            cached = self.provider.get(full_key, _MISSING)
        except CacheUnavailable as exc:
            logger.warning("Permission cache unavailable, computing directly: %s", exc)
            return producer()

        if cached is not _MISSING:
            logger.debug("Permission cache hit for %s", full_key)
            return cached  # type: ignore[no-any-return]

        logger.debug("Permission cache miss for %s", full_key)
        value = producer()
        try:
            self.provider.set(full_key, value, ttl or self.settings.cache_ttl, self._tags(tags))
        except CacheUnavailable as exc:
            logger.warning("Permission cache unavailable, result not stored: %s", exc)
        return value

    def get(self, key: str, default: Any = None) -> Any:
        if not self.enabled:
            return default
        try:
            return self.provider.get(self._full_key(key), default)
        except CacheUnavailable as exc:
            logger.warning("Permission cache unavailable: %s", exc)
            return default

    def forget(self, key: str) -> None:
        if not self.enabled:
            return
        try:
            self.provider.delete(self._full_key(key))
        except CacheUnavailable as exc:
            logger.warning("Permission cache unavailable, could not forget %s: %s", key, exc)

    def forget_subject(self, user_id: Any, team_id: Any) -> None:
        """Drop every cached decision for one user inside one team."""
        if not self.enabled:
            return
        if not self.settings.cache_tags:
            self.flush()
            return
        try:
            self.provider.flush_tags([subject_tag(user_id, team_id)])
        except CacheUnavailable as exc:
            logger.warning("Permission cache unavailable, could not forget subject: %s", exc)

    def flush(self) -> None:
        """Drop every cached permission decision."""
        if not self.enabled:
            return
        try:
            if self.settings.cache_tags:
                self.provider.flush_tags(CACHE_TAGS)
            else:
                self.provider.flush_prefix(self._full_key(""))
        except CacheUnavailable as exc:
            logger.warning("Permission cache unavailable, flush skipped: %s", exc)
        else:
            logger.debug("Permission cache flushed")
