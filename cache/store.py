"""
cache/store.py -- Invalidable cache of per-user effective permission sets.

The permission evaluator (auth/permissions.py) receives a PermissionCache at
construction time instead of owning a module-level map, so the in-process
implementation here can be swapped for a shared cache without touching call
sites.

Entries have no TTL. They live until invalidate(key) or invalidate_all() is
called -- every role/permission mutation path is responsible for that.

Stale-fill protection: a reader that loads from the database while a writer
invalidates the same key must not install the set it loaded. Callers read
version(key) BEFORE loading and pass it to set(); set() refuses the write if
the key (or the whole cache) was invalidated in between.

Usage:
    cache = InMemoryPermissionCache()
    version = cache.version(user_id)
    perms = load_from_db(user_id)
    cache.set(user_id, perms, version=version)   # False if invalidated meanwhile
    cache.get(user_id)                           # frozenset or None
    cache.invalidate(user_id)
"""

from __future__ import annotations

import threading
from typing import Protocol


class PermissionCache(Protocol):
    def get(self, key: str) -> frozenset[str] | None: ...

    def set(self, key: str, value: frozenset[str], version: tuple[int, int] | None = None) -> bool: ...

    def version(self, key: str) -> tuple[int, int]: ...

    def invalidate(self, key: str) -> None: ...

    def invalidate_all(self) -> None: ...


class InMemoryPermissionCache:
    """Process-local PermissionCache guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, frozenset[str]] = {}
        self._versions: dict[str, int] = {}
        self._epoch = 0

    def get(self, key: str) -> frozenset[str] | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, value: frozenset[str], version: tuple[int, int] | None = None) -> bool:
        """Store value under key. Returns False if version is stale."""
        with self._lock:
            if version is not None and version != (self._epoch, self._versions.get(key, 0)):
                return False
            self._entries[key] = frozenset(value)
            return True

    def version(self, key: str) -> tuple[int, int]:
        with self._lock:
            return self._epoch, self._versions.get(key, 0)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._versions[key] = self._versions.get(key, 0) + 1

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._versions.clear()
            self._epoch += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
