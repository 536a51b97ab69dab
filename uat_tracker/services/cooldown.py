"""
Cooldown and login-failure stores.

Throttling state lives behind a small get/set-with-expiry store so several
app instances can share it through Redis. Development and tests use the
in-memory store with an injected clock.

Usage:
    cooldown = AdminActionCooldown(get_cooldown_store())
    if not cooldown.try_acquire(f"reminder:{task_id}", 60):
        ...
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Protocol

logger = logging.getLogger(__name__)


# ── Clocks ───────────────────────────────────────────────────────────────


class Clock(Protocol):
    def now(self) -> float: ...


class SystemClock:
    """Wall-clock seconds since the epoch."""

    def now(self) -> float:
        return time.time()


# ── Stores ───────────────────────────────────────────────────────────────


class CooldownStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: float) -> None: ...

    def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool: ...

    def delete(self, key: str) -> None: ...


class MemoryCooldownStore:
    """Process-local store for dev/testing.

    Expired entries are dropped when read and swept on every write, so keys
    that are never read again (one-off login addresses) do not pile up.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._data)

    def _sweep(self, now):
        expired = [k for k, (_, expires) in self._data.items() if now >= expires]
        for key in expired:
            del self._data[key]

    def get(self, key):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires = entry
            if self._clock.now() >= expires:
                self._data.pop(key, None)
                return None
            return value

    def set(self, key, value, ttl_seconds):
        with self._lock:
            now = self._clock.now()
            self._sweep(now)
            self._data[key] = (value, now + ttl_seconds)

    def set_if_absent(self, key, value, ttl_seconds):
        with self._lock:
            now = self._clock.now()
            self._sweep(now)
            if key in self._data:
                return False
            self._data[key] = (value, now + ttl_seconds)
            return True

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def clear(self):
        with self._lock:
            self._data.clear()


class RedisCooldownStore:
    """Redis-backed store shared by every app instance."""

    def __init__(self, client, prefix: str = "uat:cooldown:") -> None:
        self._client = client
        self._prefix = prefix

    def get(self, key):
        return self._client.get(self._prefix + key)

    def set(self, key, value, ttl_seconds):
        self._client.set(self._prefix + key, value, px=max(1, int(ttl_seconds * 1000)))

    def set_if_absent(self, key, value, ttl_seconds):
        # SET NX PX: one round trip, so concurrent workers cannot both win
        return bool(self._client.set(
            self._prefix + key, value, px=max(1, int(ttl_seconds * 1000)), nx=True,
        ))

    def delete(self, key):
        self._client.delete(self._prefix + key)


_store = None


def get_cooldown_store() -> CooldownStore:
    """Lazy-initialise Redis or fall back to the in-memory store."""
    global _store
    if _store is not None:
        return _store

    redis_url = os.getenv("REDIS_URL")
    if redis_url and not redis_url.startswith("memory://"):
        try:
            import redis as _redis
            client = _redis.from_url(redis_url, decode_responses=True)
            client.ping()
            _store = RedisCooldownStore(client)
            logger.info("Cooldown store: using Redis at %s", redis_url.split("@")[-1])
        except Exception as exc:
            logger.warning("Redis unavailable (%s) — falling back to memory cooldown store", exc)
            _store = MemoryCooldownStore()
    else:
        _store = MemoryCooldownStore()
    return _store


def reset_cooldown_store(store: CooldownStore | None = None) -> None:
    """Replace the module-level store (tests inject a clocked memory store)."""
    global _store
    _store = store


# ── Policies ─────────────────────────────────────────────────────────────


class AdminActionCooldown:
    """At most one admin action per key inside ``cooldown_seconds``."""

    def __init__(self, store: CooldownStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    def try_acquire(self, key: str, cooldown_seconds: float) -> bool:
        return self._store.set_if_absent(f"admin:{key}", str(self._clock.now()), cooldown_seconds)

    def retry_after(self, key: str, cooldown_seconds: float) -> float:
        raw = self._store.get(f"admin:{key}")
        if raw is None:
            return 0.0
        return max(0.0, float(raw) + cooldown_seconds - self._clock.now())


class LoginFailureTracker:
    """Blocks a key for ``block_seconds`` after ``max_attempts`` failures."""

    def __init__(
        self,
        store: CooldownStore,
        clock: Clock | None = None,
        max_attempts: int = 3,
        block_seconds: float = 60,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self.max_attempts = max_attempts
        self.block_seconds = block_seconds

    def _load(self, key):
        raw = self._store.get(f"login:{key}")
        if raw is None:
            return {"attempts": 0, "blocked_until": None}
        return json.loads(raw)

    def _save(self, key, entry, ttl):
        self._store.set(f"login:{key}", json.dumps(entry), ttl)

    def remaining_block_seconds(self, key: str) -> float:
        entry = self._load(key)
        blocked_until = entry.get("blocked_until")
        if not blocked_until:
            return 0.0
        remaining = blocked_until - self._clock.now()
        if remaining <= 0:
            self.clear(key)
            return 0.0
        return remaining

    def record_failure(self, key: str) -> None:
        if self.remaining_block_seconds(key) > 0:
            return
        entry = self._load(key)
        entry["attempts"] += 1
        if entry["attempts"] >= self.max_attempts:
            entry = {"attempts": 0, "blocked_until": self._clock.now() + self.block_seconds}
        self._save(key, entry, self.block_seconds)

    def clear(self, key: str) -> None:
        self._store.delete(f"login:{key}")
