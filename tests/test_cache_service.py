import time

import pytest

from app.services.cache_invalidation import invalidate_after_call_update
from app.services.cache_service import CacheStore, cache_scope, call_details_key, domain_patterns


@pytest.fixture
def store():
    return CacheStore(default_ttl=60, check_period=120, max_keys=5)


class TestBasicOperations:
    def test_set_get_delete(self, store):
        assert store.set("call_history_42", [1, 2, 3]) is True
        assert store.get("call_history_42") == [1, 2, 3]
        assert store.has("call_history_42")
        assert store.delete("call_history_42", "missing") == 1
        assert store.get("call_history_42") is None
        assert store.get("call_history_42", "fallback") == "fallback"

    def test_values_are_not_cloned_by_default(self, store):
        value = {"calls": []}
        store.set("k", value)
        assert store.get("k") is value

    def test_clones_when_enabled(self):
        store = CacheStore(use_clones=True)
        value = {"calls": []}
        store.set("k", value)
        value["calls"].append(1)
        assert store.get("k") == {"calls": []}

    def test_expiry(self, store, monkeypatch):
        now = time.monotonic()
        store.set("short", "v", ttl=10)
        store.set("forever", "v", ttl=0)
        monkeypatch.setattr(time, "monotonic", lambda: now + 11)
        assert store.get("short") is None
        assert store.get("forever") == "v"
        assert store.keys() == ["forever"]

    def test_max_keys_bounds_the_store(self, store):
        for i in range(5):
            assert store.set(f"k{i}", i)
        assert store.set("overflow", 1) is False
        # Overwriting an existing key is always allowed
        assert store.set("k0", "new") is True

    def test_sweep_frees_room(self, store, monkeypatch):
        now = time.monotonic()
        for i in range(5):
            store.set(f"k{i}", i, ttl=5)
        monkeypatch.setattr(time, "monotonic", lambda: now + 6)
        assert store.set("fresh", 1) is True
        assert store.keys() == ["fresh"]

    def test_stats_and_flush(self, store):
        store.set("a", 1)
        store.get("a")
        store.get("b")
        stats = store.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["keys"] == 1
        store.flush_all()
        assert store.keys() == []


class TestInvalidation:
    def _fill(self, store):
        keys = [
            "call_history_42_p1",
            "call_history_42",
            "call_history_7_p1",
            "call_history_all_p1",
            "call_stats_42_abc",
            "active_calls_42",
            "active_calls_7",
            "entries_42_p1",
            "entries_7_p1",
            "user_role_42",
        ]
        for key in keys:
            store.set(key, key)
        return keys

    def test_invalidate_by_pattern(self):
        store = CacheStore()
        self._fill(store)
        assert store.invalidate_by_pattern("call_history_*") == 4
        assert not any(k.startswith("call_history_") for k in store.keys())

    def test_smart_invalidate_scoped_to_user(self):
        store = CacheStore()
        self._fill(store)
        store.smart_invalidate("calls", 42)
        remaining = set(store.keys())
        assert "call_history_42_p1" not in remaining
        assert "call_history_42" not in remaining
        assert "call_stats_42_abc" not in remaining
        assert "active_calls_42" not in remaining
        # The admin-wide partition contains user 42's calls too
        assert "call_history_all_p1" not in remaining
        # Other users and other domains are untouched
        assert {"call_history_7_p1", "active_calls_7", "entries_42_p1", "entries_7_p1", "user_role_42"} <= remaining

    def test_user_id_prefix_does_not_leak(self):
        store = CacheStore()
        store.set("call_history_4_p1", 1)
        store.set("call_history_42_p1", 1)
        store.smart_invalidate("calls", 4)
        assert store.keys() == ["call_history_42_p1"]

    def test_smart_invalidate_whole_domain(self):
        store = CacheStore()
        self._fill(store)
        store.set(call_details_key("abc"), {})
        store.smart_invalidate("calls")
        assert set(store.keys()) == {"entries_42_p1", "entries_7_p1", "user_role_42"}

    def test_smart_invalidate_users_and_all(self):
        store = CacheStore()
        self._fill(store)
        assert store.smart_invalidate("users", 42) == 1
        assert store.smart_invalidate("all") == 9
        assert store.keys() == []

    def test_unknown_domain(self):
        store = CacheStore()
        self._fill(store)
        assert store.smart_invalidate("widgets") == 0
        assert domain_patterns("widgets") == []


def test_cache_scope():
    assert cache_scope({"_id": "42", "role": "user"}) == "42"
    assert cache_scope({"_id": "1", "role": "admin"}) == "all"
    assert cache_scope({"_id": "1", "role": "super_admin"}) == "all"


def test_invalidate_after_call_update_targets_agent_and_lead_owner():
    store = CacheStore()
    for key in ["call_details_c1", "call_history_a1_p1", "entries_o1_p1", "call_history_x_p1", "entries_x_p1"]:
        store.set(key, 1)

    invalidate_after_call_update(store, {"_id": "c1", "user_id": "a1"}, {"created_by": "o1"})

    assert set(store.keys()) == {"call_history_x_p1", "entries_x_p1"}


def test_invalidate_after_call_update_without_cache():
    assert invalidate_after_call_update(None, {"_id": "c1"}) == 0
