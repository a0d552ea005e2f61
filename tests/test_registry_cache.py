from __future__ import annotations

import logging
import threading

import pytest

from eventlens.observability import MetricsRecorder
from eventlens.registry import RegistryEntry, RegistryValidationError, TenantRegistryCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class CountingLookup:
    def __init__(self, registries: dict | None = None) -> None:
        self.registries = registries or {}
        self.calls: list[str] = []

    def get_registry_for_tenant(self, tenant_id: str):
        self.calls.append(tenant_id)
        return self.registries.get(tenant_id, {})


def _entry(tenant: str, key: str) -> RegistryEntry:
    return RegistryEntry(tenant_id=tenant, key=key, type="number", promote_to="meta_num")


def test_cache_serves_hits_until_ttl_expires() -> None:
    clock = FakeClock()
    lookup = CountingLookup({"a": {"latency_ms": _entry("a", "latency_ms")}})
    cache = TenantRegistryCache(lookup, ttl_seconds=10, clock=clock)

    first = cache.get_registry("a")
    clock.now = 9.0
    second = cache.get_registry("a")

    assert first is second
    assert lookup.calls == ["a"]

    clock.now = 10.5
    cache.get_registry("a")
    assert lookup.calls == ["a", "a"]


def test_invalidate_and_clear_force_refetch() -> None:
    clock = FakeClock()
    lookup = CountingLookup()
    cache = TenantRegistryCache(lookup, clock=clock)

    cache.get_registry("a")
    cache.get_registry("b")
    cache.invalidate("a")
    assert "a" not in cache
    assert "b" in cache

    cache.get_registry("a")
    cache.clear()
    assert len(cache) == 0
    cache.get_registry("b")

    assert lookup.calls == ["a", "b", "a", "b"]


def test_overflow_evicts_oldest_capture() -> None:
    clock = FakeClock()
    cache = TenantRegistryCache(CountingLookup(), max_entries=2, clock=clock)

    for tenant in ("a", "b", "c"):
        cache.get_registry(tenant)
        clock.now += 1.0

    assert len(cache) == 2
    assert "a" not in cache
    assert "b" in cache and "c" in cache


def test_expired_entries_go_before_fresh_ones() -> None:
    clock = FakeClock()
    cache = TenantRegistryCache(CountingLookup(), ttl_seconds=5, max_entries=10, clock=clock)

    cache.get_registry("old")
    clock.now = 6.0
    cache.get_registry("fresh")

    assert "old" not in cache
    assert "fresh" in cache


def test_without_lookup_returns_none() -> None:
    cache = TenantRegistryCache(None)

    assert cache.enabled is False
    assert cache.get_registry("a") is None


def test_mapping_entries_are_validated() -> None:
    lookup = CountingLookup(
        {
            "a": {"latency_ms": {"type": "number", "promote_to": "meta_bool"}},
            "b": {"paid": {"type": "boolean", "promoteTo": "meta_bool"}},
        }
    )
    cache = TenantRegistryCache(lookup)

    with pytest.raises(RegistryValidationError):
        cache.get_registry("a")
    assert "a" not in cache

    registry = cache.get_registry("b")
    assert registry["paid"].tenant_id == "b"


def test_rejects_non_positive_capacity() -> None:
    with pytest.raises(ValueError):
        TenantRegistryCache(CountingLookup(), max_entries=0)


def test_slow_lookup_does_not_block_other_tenants() -> None:
    started = threading.Event()
    release = threading.Event()

    class SlowLookup:
        def get_registry_for_tenant(self, tenant_id: str):
            if tenant_id == "slow":
                started.set()
                release.wait(timeout=5)
            return {}

    cache = TenantRegistryCache(SlowLookup())
    worker = threading.Thread(target=cache.get_registry, args=("slow",))
    worker.start()
    try:
        assert started.wait(timeout=5)
        assert cache.get_registry("fast") == {}
        assert worker.is_alive()
    finally:
        release.set()
        worker.join(timeout=5)

    assert "slow" in cache
    assert "fast" in cache


def test_cache_records_hits_and_misses(caplog) -> None:
    metrics = MetricsRecorder(enabled=True, logger=logging.getLogger("tests.registry.metrics"))
    cache = TenantRegistryCache(CountingLookup(), metrics=metrics)

    with caplog.at_level(logging.INFO, logger="tests.registry.metrics"):
        cache.get_registry("a")
        cache.get_registry("a")

    messages = [record.getMessage() for record in caplog.records]
    assert "eventlens.registry.cache.miss value=1" in messages
    assert "eventlens.registry.cache.hit value=1" in messages


def test_failed_lookup_releases_fetch_lock() -> None:
    class FailingLookup:
        def get_registry_for_tenant(self, tenant_id: str):
            raise OSError("registry unavailable")

    cache = TenantRegistryCache(FailingLookup())

    for _ in range(3):
        with pytest.raises(OSError):
            cache.get_registry("broken")

    assert cache._fetch_locks == {}
    assert "broken" not in cache


def test_invalidate_during_fetch_discards_stale_result() -> None:
    stale = {"latency_ms": _entry("a", "latency_ms")}

    class RacingLookup:
        def __init__(self) -> None:
            self.calls = 0

        def get_registry_for_tenant(self, tenant_id: str):
            self.calls += 1
            if self.calls == 1:
                # A key was registered while this read was in flight.
                cache.invalidate(tenant_id)
                return stale
            return {}

    lookup = RacingLookup()
    cache = TenantRegistryCache(lookup)

    assert cache.get_registry("a") == stale
    assert "a" not in cache
    assert cache.get_registry("a") == {}
    assert lookup.calls == 2
    assert "a" in cache
