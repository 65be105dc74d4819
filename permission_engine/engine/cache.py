"""
Resolution cache with TTL.

Keys are ``(user_id, context_signature)``. All access goes through one lock.

Each user also has a generation counter that `invalidate_prefix` bumps. A
caller that misses reads the generation *before* resolving and passes it to
`set`; if an invalidation happened in between, the write is dropped. That
keeps a resolution computed from pre-revocation data from being stored after
the revocation's invalidation.

Expired slots are purged at most once per TTL period, on write. When more
than `max_tracked_users` generation counters accumulate they are discarded
and the epoch is bumped, so every in-flight write is dropped rather than
matched against a reset counter.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

CacheKey = tuple[str, str]


@dataclass
class _Slot(Generic[T]):
    value: T
    expires_at: float


class PermissionCache(Generic[T]):
    def __init__(
        self,
        default_ttl_seconds: float = 300.0,
        timer: Callable[[], float] = time.monotonic,
        max_tracked_users: int = 10_000,
    ) -> None:
        self._default_ttl = default_ttl_seconds
        self._timer = timer
        self._max_tracked_users = max_tracked_users
        self._lock = threading.Lock()
        self._slots: dict[CacheKey, _Slot[T]] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._next_purge = timer() + default_ttl_seconds

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def generation(self, user_id: str) -> tuple[int, int]:
        with self._lock:
            return self._current_generation(user_id)

    def _current_generation(self, user_id: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(user_id, 0)

    def get(self, key: CacheKey) -> T | None:
        now = self._timer()
        with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                return None
            if now >= slot.expires_at:
                del self._slots[key]
                return None
            return slot.value

    def set(self, key: CacheKey, value: T, ttl: float | None = None, generation: tuple[int, int] | None = None) -> bool:
        """Store `value`; returns False when the write was dropped as stale."""

        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= 0:
            return False
        now = self._timer()
        with self._lock:
            if now >= self._next_purge:
                self._purge_expired(now)
            if generation is not None and self._current_generation(key[0]) != generation:
                return False
            self._slots[key] = _Slot(value=value, expires_at=now + ttl)
            return True

    def _purge_expired(self, now: float) -> None:
        for key in [k for k, slot in self._slots.items() if now >= slot.expires_at]:
            del self._slots[key]
        self._next_purge = now + self._default_ttl

    def invalidate_prefix(self, user_id: str) -> int:
        """Drop every entry for `user_id`; returns how many were removed."""

        with self._lock:
            if user_id not in self._generations and len(self._generations) >= self._max_tracked_users:
                self._generations.clear()
                self._epoch += 1
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            doomed = [key for key in self._slots if key[0] == user_id]
            for key in doomed:
                del self._slots[key]
            return len(doomed)

    def clear(self) -> None:
        """Drop everything (role and catalog mutations can affect any user)."""

        with self._lock:
            self._epoch += 1
            self._slots.clear()
            self._generations.clear()

    @property
    def tracked_users(self) -> int:
        with self._lock:
            return len(self._generations)

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
