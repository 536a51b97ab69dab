"""
Cooldown store tests (injected clock, in-memory store, Redis adapter).
"""

import json

from uat_tracker.services.cooldown import (
    AdminActionCooldown,
    LoginFailureTracker,
    MemoryCooldownStore,
    RedisCooldownStore,
    get_cooldown_store,
    reset_cooldown_store,
)


class _FakeRedis:
    """Captures calls made by RedisCooldownStore."""

    def __init__(self):
        self.data = {}
        self.calls = []

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, px=None, nx=False):
        self.calls.append(("set", key, value, px, nx))
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    def delete(self, key):
        self.data.pop(key, None)


class TestMemoryStore:
    def test_expiry(self, clock):
        store = MemoryCooldownStore(clock)
        store.set("k", "v", 10)
        assert store.get("k") == "v"
        clock.advance(9.9)
        assert store.get("k") == "v"
        clock.advance(0.1)
        assert store.get("k") is None

    def test_delete_and_clear(self, clock):
        store = MemoryCooldownStore(clock)
        store.set("a", "1", 10)
        store.set("b", "2", 10)
        store.delete("a")
        assert store.get("a") is None
        store.clear()
        assert store.get("b") is None

    def test_write_sweeps_expired_keys(self, clock):
        store = MemoryCooldownStore(clock)
        store.set("login:10.0.0.1", "{}", 1)
        store.set("login:10.0.0.2", "{}", 1)
        clock.advance(2)
        store.set("login:10.0.0.3", "{}", 60)
        assert len(store) == 1

    def test_set_if_absent(self, clock):
        store = MemoryCooldownStore(clock)
        assert store.set_if_absent("k", "1", 10)
        assert not store.set_if_absent("k", "2", 10)
        assert store.get("k") == "1"
        clock.advance(10)
        assert store.set_if_absent("k", "3", 10)
        assert store.get("k") == "3"


class TestAdminActionCooldown:
    def test_second_action_inside_window_blocked(self, clock):
        cooldown = AdminActionCooldown(MemoryCooldownStore(clock), clock)
        assert cooldown.try_acquire("reminder:1", 60)
        clock.advance(30)
        assert not cooldown.try_acquire("reminder:1", 60)
        assert cooldown.retry_after("reminder:1", 60) == 30

    def test_window_expires(self, clock):
        cooldown = AdminActionCooldown(MemoryCooldownStore(clock), clock)
        assert cooldown.try_acquire("reminder:1", 60)
        clock.advance(60)
        assert cooldown.try_acquire("reminder:1", 60)

    def test_keys_are_independent(self, clock):
        cooldown = AdminActionCooldown(MemoryCooldownStore(clock), clock)
        assert cooldown.try_acquire("reminder:1", 60)
        assert cooldown.try_acquire("reminder:2", 60)
        assert cooldown.retry_after("reminder:3", 60) == 0.0

    def test_shared_store_between_instances(self, clock):
        store = MemoryCooldownStore(clock)
        assert AdminActionCooldown(store, clock).try_acquire("reminder:1", 60)
        assert not AdminActionCooldown(store, clock).try_acquire("reminder:1", 60)


class TestLoginFailureTracker:
    def test_blocks_after_max_attempts(self, clock):
        tracker = LoginFailureTracker(MemoryCooldownStore(clock), clock)
        tracker.record_failure("1.2.3.4")
        tracker.record_failure("1.2.3.4")
        assert tracker.remaining_block_seconds("1.2.3.4") == 0
        tracker.record_failure("1.2.3.4")
        assert tracker.remaining_block_seconds("1.2.3.4") == 60

    def test_block_lifts_after_block_seconds(self, clock):
        tracker = LoginFailureTracker(MemoryCooldownStore(clock), clock, max_attempts=1, block_seconds=60)
        tracker.record_failure("k")
        clock.advance(59)
        assert tracker.remaining_block_seconds("k") == 1
        clock.advance(1)
        assert tracker.remaining_block_seconds("k") == 0
        tracker.record_failure("k")
        assert tracker.remaining_block_seconds("k") == 60

    def test_failures_while_blocked_do_not_extend(self, clock):
        tracker = LoginFailureTracker(MemoryCooldownStore(clock), clock, max_attempts=1)
        tracker.record_failure("k")
        clock.advance(30)
        tracker.record_failure("k")
        assert tracker.remaining_block_seconds("k") == 30

    def test_clear(self, clock):
        tracker = LoginFailureTracker(MemoryCooldownStore(clock), clock)
        tracker.record_failure("k")
        tracker.record_failure("k")
        tracker.clear("k")
        tracker.record_failure("k")
        assert tracker.remaining_block_seconds("k") == 0


class TestRedisStore:
    def test_prefix_and_millisecond_ttl(self):
        client = _FakeRedis()
        store = RedisCooldownStore(client)
        store.set("admin:reminder:1", "123.0", 60)
        assert client.calls == [("set", "uat:cooldown:admin:reminder:1", "123.0", 60000, False)]
        assert store.get("admin:reminder:1") == "123.0"
        store.delete("admin:reminder:1")
        assert store.get("admin:reminder:1") is None

    def test_acquire_uses_single_conditional_set(self, clock):
        client = _FakeRedis()
        first = AdminActionCooldown(RedisCooldownStore(client), clock)
        second = AdminActionCooldown(RedisCooldownStore(client), clock)
        assert first.try_acquire("reminder:1", 60)
        assert not second.try_acquire("reminder:1", 60)
        assert client.calls == [
            ("set", "uat:cooldown:admin:reminder:1", "1000000.0", 60000, True),
            ("set", "uat:cooldown:admin:reminder:1", "1000000.0", 60000, True),
        ]

    def test_login_entries_are_json(self, clock):
        client = _FakeRedis()
        tracker = LoginFailureTracker(RedisCooldownStore(client), clock)
        tracker.record_failure("ip")
        assert json.loads(client.data["uat:cooldown:login:ip"]) == {"attempts": 1, "blocked_until": None}


class TestStoreFactory:
    def test_memory_without_redis_url(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        reset_cooldown_store(None)
        store = get_cooldown_store()
        assert isinstance(store, MemoryCooldownStore)
        assert get_cooldown_store() is store

    def test_unreachable_redis_falls_back_to_memory(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
        reset_cooldown_store(None)
        assert isinstance(get_cooldown_store(), MemoryCooldownStore)
