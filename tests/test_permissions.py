"""
tests/test_permissions.py -- Permission Evaluator and permission cache tests.

Covers:
  - literal, resource-wildcard and global-wildcard grants
  - a user with no roles is denied everything
  - the store is consulted once per user until invalidated
  - store failures surface as InternalError and are not cached
  - stale fills (load raced with invalidation) are refused by the cache
  - concurrent readers and invalidators leave the cache consistent
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import InternalError
from auth.models import Permission
from auth.permissions import PermissionEvaluator, permission_matches
from cache.store import InMemoryPermissionCache


def _store_with(*names: str) -> MagicMock:
    store = MagicMock()
    store.get_user_permissions.return_value = [Permission(*name.split(":")) for name in names]
    return store


class TestMatching:
    @pytest.mark.parametrize(
        ("granted", "resource", "action", "expected"),
        [
            ({"users:read"}, "users", "read", True),
            ({"users:read"}, "users", "update", False),
            ({"users:*"}, "users", "delete", True),
            ({"users:*"}, "roles", "read", False),
            ({"*:*"}, "audit", "read", True),
            (set(), "users", "read", False),
        ],
    )
    def test_permission_matches(self, granted, resource, action, expected) -> None:
        assert permission_matches(frozenset(granted), resource, action) is expected


class TestEvaluator:
    def test_union_of_roles(self, core) -> None:
        user = core.add_user("multi@example.com")
        readers = core.add_role("readers", ["users:read"])
        auditors = core.add_role("auditors", ["audit:read"])
        core.users.set_user_roles(user.id, [readers.id, auditors.id])

        assert core.permissions.permissions_for(user.id) == frozenset({"users:read", "audit:read"})
        assert core.permissions.has_permission(user.id, "audit", "read")
        assert not core.permissions.has_permission(user.id, "roles", "read")

    def test_no_roles_denied(self, core) -> None:
        user = core.add_user("nobody@example.com")
        assert not core.permissions.has_permission(user.id, "users", "read")

    def test_global_wildcard(self, core) -> None:
        user = core.add_user("root@example.com")
        admin = core.add_role("admin", ["*:*"], is_system=True)
        core.users.set_user_roles(user.id, [admin.id])
        assert core.permissions.has_permission(user.id, "anything", "whatever")

    def test_cached_after_first_load(self) -> None:
        store = _store_with("users:read")
        evaluator = PermissionEvaluator(store, InMemoryPermissionCache())
        for _ in range(5):
            assert evaluator.has_permission("u1", "users", "read")
        store.get_user_permissions.assert_called_once_with("u1")

    def test_invalidate_forces_reload(self) -> None:
        store = _store_with("users:read")
        evaluator = PermissionEvaluator(store, InMemoryPermissionCache())
        assert evaluator.has_permission("u1", "users", "read")

        store.get_user_permissions.return_value = []
        assert evaluator.has_permission("u1", "users", "read")  # still cached
        evaluator.invalidate("u1")
        assert not evaluator.has_permission("u1", "users", "read")
        assert store.get_user_permissions.call_count == 2

    def test_invalidate_all(self) -> None:
        store = _store_with("users:read")
        evaluator = PermissionEvaluator(store, InMemoryPermissionCache())
        evaluator.permissions_for("u1")
        evaluator.permissions_for("u2")
        evaluator.invalidate_all()
        evaluator.permissions_for("u1")
        evaluator.permissions_for("u2")
        assert store.get_user_permissions.call_count == 4

    def test_store_failure_raises_and_is_not_cached(self) -> None:
        store = MagicMock()
        store.get_user_permissions.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        cache = InMemoryPermissionCache()
        evaluator = PermissionEvaluator(store, cache)

        with pytest.raises(InternalError):
            evaluator.has_permission("u1", "users", "read")
        assert cache.get("u1") is None

        store.get_user_permissions.side_effect = None
        store.get_user_permissions.return_value = [Permission("users", "read")]
        assert evaluator.has_permission("u1", "users", "read")


class TestCache:
    def test_stale_fill_refused(self) -> None:
        cache = InMemoryPermissionCache()
        version = cache.version("u1")
        cache.invalidate("u1")  # a writer lands between read-version and fill
        assert cache.set("u1", frozenset({"users:read"}), version=version) is False
        assert cache.get("u1") is None

    def test_stale_fill_refused_after_invalidate_all(self) -> None:
        cache = InMemoryPermissionCache()
        version = cache.version("u1")
        cache.invalidate_all()
        assert cache.set("u1", frozenset({"users:read"}), version=version) is False

    def test_current_fill_accepted(self) -> None:
        cache = InMemoryPermissionCache()
        version = cache.version("u1")
        assert cache.set("u1", frozenset({"users:read"}), version=version) is True
        assert cache.get("u1") == frozenset({"users:read"})
        assert len(cache) == 1

    def test_invalidate_unknown_key_is_harmless(self) -> None:
        cache = InMemoryPermissionCache()
        cache.invalidate("never-seen")
        assert cache.get("never-seen") is None

    def test_concurrent_access(self) -> None:
        cache = InMemoryPermissionCache()
        store = _store_with("users:read")
        evaluator = PermissionEvaluator(store, cache)
        errors: list[BaseException] = []

        def reader() -> None:
            try:
                for _ in range(200):
                    assert evaluator.permissions_for("u1") == frozenset({"users:read"})
            except BaseException as exc:  # noqa: BLE001 -- surfaced via errors list
                errors.append(exc)

        def invalidator() -> None:
            for _ in range(200):
                cache.invalidate("u1")

        threads = [threading.Thread(target=reader) for _ in range(4)] + [threading.Thread(target=invalidator)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert evaluator.permissions_for("u1") == frozenset({"users:read"})
