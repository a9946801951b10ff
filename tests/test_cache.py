from __future__ import annotations

from typing import Any

import pytest
import redis

from fastapi_teams import CacheUnavailable, MemoryCacheProvider, PermissionCache, RedisCacheProvider, TeamsSettings
from fastapi_teams.cache import build_provider, fingerprint, get_memory_provider, subject_tag


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class BrokenProvider:
    """Provider whose backend is unreachable."""

    def get(self, key: str, default: Any = None) -> Any:
        raise CacheUnavailable("down")

    def set(self, key: str, value: Any, ttl: int, tags: Any = ()) -> None:
        raise CacheUnavailable("down")

    def delete(self, key: str) -> None:
        raise CacheUnavailable("down")

    def flush_tags(self, tags: Any) -> None:
        raise CacheUnavailable("down")

    def flush_prefix(self, prefix: str) -> None:
        raise CacheUnavailable("down")


class FakePipeline:
    def __init__(self, client: FakeRedis) -> None:
        self.client = client
        self.ops: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def set(self, *args: Any, **kwargs: Any) -> None:
        self.ops.append(("set", args, kwargs))

    def sadd(self, *args: Any) -> None:
        self.ops.append(("sadd", args, {}))

    def execute(self) -> None:
        for name, args, kwargs in self.ops:
            getattr(self.client, name)(*args, **kwargs)


class FakeRedis:
    """Just enough of the redis client API for RedisCacheProvider."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}

    def _check(self) -> None:
        if self.fail:
            raise redis.ConnectionError("connection refused")

    def get(self, key: str) -> str | None:
        self._check()
        return self.values.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._check()
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex

    def sadd(self, key: str, member: str) -> None:
        self.sets.setdefault(key, set()).add(member)

    def smembers(self, key: str) -> set[str]:
        self._check()
        return set(self.sets.get(key, set()))

    def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None)
            self.sets.pop(key, None)
        return removed

    def scan_iter(self, match: str) -> list[str]:
        self._check()
        prefix = match.rstrip("*")
        return [key for key in self.values if key.startswith(prefix)]

    def pipeline(self) -> FakePipeline:
        self._check()
        return FakePipeline(self)


class TestFingerprint:
    def test_is_deterministic(self) -> None:
        assert fingerprint(1, 2, ["posts.view"], False, None) == fingerprint(1, 2, ["posts.view"], False, None)

    def test_differs_by_any_component(self) -> None:
        base = fingerprint(1, 2, ["posts.view"], False, None)
        assert base != fingerprint(1, 2, ["posts.view"], True, None)
        assert base != fingerprint(1, 2, ["posts.view"], False, "role")
        assert base != fingerprint(1, 3, ["posts.view"], False, None)


class TestMemoryCacheProvider:
    def test_get_returns_default_when_missing(self) -> None:
        provider = MemoryCacheProvider()
        assert provider.get("missing", "fallback") == "fallback"

    def test_entries_expire(self) -> None:
        clock = FakeClock()
        provider = MemoryCacheProvider(clock=clock)
        provider.set("key", True, ttl=10)
        assert provider.get("key") is True
        clock.now += 11
        assert provider.get("key") is None

    def test_flush_tags_drops_tagged_entries_only(self) -> None:
        provider = MemoryCacheProvider()
        provider.set("a", 1, 60, tags=["teams"])
        provider.set("b", 2, 60)
        provider.flush_tags(["teams"])
        assert provider.get("a") is None
        assert provider.get("b") == 2

    def test_flush_prefix(self) -> None:
        provider = MemoryCacheProvider()
        provider.set("teams_permissions:a", 1, 60)
        provider.set("other:b", 2, 60)
        provider.flush_prefix("teams_permissions:")
        assert len(provider) == 1


class TestPermissionCache:
    def test_remember_computes_once(self, cache: PermissionCache) -> None:
        calls: list[int] = []

        def producer() -> bool:
            calls.append(1)
            return False

        assert cache.remember("key", producer) is False
        assert cache.remember("key", producer) is False
        assert len(calls) == 1

    def test_keys_are_prefixed(self, cache: PermissionCache, provider: MemoryCacheProvider) -> None:
        cache.remember("key", lambda: True)
        assert provider.get("teams_permissions:key") is True

    def test_disabled_cache_is_pass_through(self, provider: MemoryCacheProvider) -> None:
        cache = PermissionCache(TeamsSettings(_env_file=None, cache_enabled=False), provider)
        calls: list[int] = []

        def producer() -> bool:
            calls.append(1)
            return True

        assert cache.remember("key", producer) is True
        assert cache.remember("key", producer) is True
        assert len(calls) == 2
        assert len(provider) == 0
        assert cache.get("key", "default") == "default"

    def test_forget_drops_key(self, cache: PermissionCache) -> None:
        cache.remember("key", lambda: True)
        cache.forget("key")
        assert cache.get("key") is None

    def test_flush_drops_everything_tagged(self, cache: PermissionCache, provider: MemoryCacheProvider) -> None:
        cache.remember("a", lambda: True)
        cache.remember("b", lambda: ["posts.view"])
        cache.flush()
        assert len(provider) == 0

    def test_flush_without_tags_uses_prefix(self, provider: MemoryCacheProvider) -> None:
        cache = PermissionCache(TeamsSettings(_env_file=None, cache_tags=False), provider)
        cache.remember("a", lambda: True)
        provider.set("unrelated", 1, 60)
        cache.flush()
        assert cache.get("a") is None
        assert provider.get("unrelated") == 1

    def test_forget_subject_is_narrow(self, cache: PermissionCache) -> None:
        cache.remember("u2_t1", lambda: True, tags=[subject_tag(2, 1)])
        cache.remember("u3_t1", lambda: True, tags=[subject_tag(3, 1)])
        cache.forget_subject(2, 1)
        assert cache.get("u2_t1") is None
        assert cache.get("u3_t1") is True

    def test_unavailable_provider_falls_back_to_producer(self, settings: TeamsSettings) -> None:
        cache = PermissionCache(settings, BrokenProvider())
        assert cache.remember("key", lambda: True) is True
        assert cache.get("key", "default") == "default"
        cache.forget("key")
        cache.flush()

    def test_build_provider_memory(self, settings: TeamsSettings) -> None:
        assert isinstance(build_provider(settings), MemoryCacheProvider)

    def test_memory_store_is_process_wide(self, settings: TeamsSettings) -> None:
        assert build_provider(settings) is get_memory_provider()
        writer = PermissionCache(settings)
        reader = PermissionCache(settings)
        writer.remember("key", lambda: True)
        assert reader.get("key") is True
        reader.flush()
        assert writer.get("key") is None


class TestRedisCacheProvider:
    def test_round_trips_json_values(self) -> None:
        provider = RedisCacheProvider(FakeRedis())  # type: ignore[arg-type]
        provider.set("key", ["posts.view"], ttl=30, tags=["teams"])
        assert provider.get("key") == ["posts.view"]
        assert provider.get("missing", False) is False

    def test_flush_tags_deletes_members(self) -> None:
        client = FakeRedis()
        provider = RedisCacheProvider(client)  # type: ignore[arg-type]
        provider.set("a", True, ttl=30, tags=["teams"])
        provider.set("b", True, ttl=30)
        provider.flush_tags(["teams"])
        assert provider.get("a") is None
        assert provider.get("b") is True
        assert "teams_tags:teams" not in client.sets

    def test_redis_errors_become_cache_unavailable(self) -> None:
        provider = RedisCacheProvider(FakeRedis(fail=True))  # type: ignore[arg-type]
        with pytest.raises(CacheUnavailable):
            provider.get("key")
        with pytest.raises(CacheUnavailable):
            provider.set("key", True, ttl=30)

    def test_permission_cache_survives_redis_outage(self, settings: TeamsSettings) -> None:
        cache = PermissionCache(settings, RedisCacheProvider(FakeRedis(fail=True)))  # type: ignore[arg-type]
        assert cache.remember("key", lambda: True) is True
