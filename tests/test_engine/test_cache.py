"""Tests for the TTL cache and its stale-write protection."""
from __future__ import annotations

import threading

from permission_engine.engine.cache import PermissionCache
from permission_engine.engine.matching import code_matches, matches_any


class FakeTimer:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_get_returns_value_until_ttl_elapses():
    timer = FakeTimer()
    cache = PermissionCache(default_ttl_seconds=300, timer=timer)
    cache.set(("u1", "ctx"), "value")

    timer.now += 299
    assert cache.get(("u1", "ctx")) == "value"
    timer.now += 1
    assert cache.get(("u1", "ctx")) is None
    assert len(cache) == 0


def test_explicit_ttl_overrides_default():
    timer = FakeTimer()
    cache = PermissionCache(default_ttl_seconds=300, timer=timer)
    cache.set(("u1", "ctx"), "value", ttl=10)

    timer.now += 10
    assert cache.get(("u1", "ctx")) is None


def test_non_positive_ttl_is_not_stored():
    cache = PermissionCache()
    assert cache.set(("u1", "ctx"), "value", ttl=0) is False
    assert cache.get(("u1", "ctx")) is None


def test_invalidate_prefix_only_touches_that_user():
    cache = PermissionCache()
    cache.set(("u1", "a"), 1)
    cache.set(("u1", "b"), 2)
    cache.set(("u2", "a"), 3)

    assert cache.invalidate_prefix("u1") == 2
    assert cache.get(("u1", "a")) is None
    assert cache.get(("u1", "b")) is None
    assert cache.get(("u2", "a")) == 3


def test_write_with_stale_generation_is_dropped():
    cache = PermissionCache()
    generation = cache.generation("u1")

    cache.invalidate_prefix("u1")  # a revocation lands while the caller computes

    assert cache.set(("u1", "ctx"), "stale", generation=generation) is False
    assert cache.get(("u1", "ctx")) is None


def test_write_with_current_generation_is_kept():
    cache = PermissionCache()
    generation = cache.generation("u1")
    cache.invalidate_prefix("u2")

    assert cache.set(("u1", "ctx"), "fresh", generation=generation) is True
    assert cache.get(("u1", "ctx")) == "fresh"


def test_clear_invalidates_in_flight_writes_for_every_user():
    cache = PermissionCache()
    generation = cache.generation("never-seen")

    cache.clear()

    assert cache.set(("never-seen", "ctx"), "stale", generation=generation) is False


def test_expired_slots_are_purged_on_write():
    timer = FakeTimer()
    cache = PermissionCache(default_ttl_seconds=60, timer=timer)
    for i in range(50):
        cache.set((f"u{i}", "ctx"), i)

    timer.now += 61
    cache.set(("fresh", "ctx"), "value")

    assert len(cache) == 1


def test_generation_table_is_bounded_and_reset_drops_in_flight_writes():
    cache = PermissionCache(max_tracked_users=3)
    in_flight = cache.generation("u1")
    for user_id in ("u1", "u2", "u3"):
        cache.invalidate_prefix(user_id)
    assert cache.tracked_users == 3

    cache.invalidate_prefix("u4")

    assert cache.tracked_users == 1
    assert cache.set(("u1", "ctx"), "stale", generation=in_flight) is False
    assert cache.set(("u1", "ctx"), "fresh", generation=cache.generation("u1")) is True


def test_clear_forgets_generations():
    cache = PermissionCache()
    cache.invalidate_prefix("u1")
    cache.clear()
    assert cache.tracked_users == 0


def test_concurrent_invalidation_never_leaves_stale_entry():
    cache = PermissionCache()
    stop = threading.Event()

    def writer():
        while not stop.is_set():
            generation = cache.generation("u1")
            cache.set(("u1", "ctx"), "granted", generation=generation)

    threads = [threading.Thread(target=writer) for _ in range(4)]
    for t in threads:
        t.start()
    try:
        for _ in range(200):
            generation_before = cache.generation("u1")
            cache.invalidate_prefix("u1")
            assert cache.generation("u1") != generation_before
    finally:
        stop.set()
        for t in threads:
            t.join()

    # Any write that captured a generation before the last invalidation was dropped.
    cache.invalidate_prefix("u1")
    assert cache.get(("u1", "ctx")) is None


def test_wildcard_matching():
    assert code_matches("orders.*", "orders.create")
    assert code_matches("orders.*", "orders.items.read")
    assert not code_matches("orders.*", "orders")
    assert not code_matches("orders.*", "ordersx.read")
    assert code_matches("orders.read", "orders.read")
    assert matches_any(frozenset({"clients.read", "orders.*"}), "orders.delete")
    assert not matches_any(frozenset({"clients.read"}), "orders.delete")
