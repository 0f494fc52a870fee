"""
auth/permissions.py -- Permission Evaluator.

A user's effective permission set is the union of the permissions attached
to every role assigned to them, flattened to "resource:action" strings. The
first check for a user loads that set from the store and caches it; later
checks are served from the cache with no database round trip.

Matching order for has_permission(user, resource, action):
  1. "resource:action"   literal grant
  2. "resource:*"        every action on the resource
  3. "*:*"               everything

Cache contract: entries never expire on their own. Whoever changes a user's
roles, or a role's permissions, must call invalidate(user_id) for every
affected user (or invalidate_all()). auth/roles.py is the single place that
performs those mutations and honours the contract.

Store failures raise InternalError and are never cached -- a transient
database error cannot turn into a lasting "deny" (or "allow").

Layer rule: no imports from api/ or audit/. cache/ is injected, not imported
for its implementation.
"""

from __future__ import annotations

import logging

from auth.errors import store_errors
from auth.store import UserStore
from cache.store import PermissionCache

logger = logging.getLogger("backoffice.auth.permissions")

WILDCARD = "*"


def permission_matches(granted: frozenset[str], resource: str, action: str) -> bool:
    return (
        f"{resource}:{action}" in granted
        or f"{resource}:{WILDCARD}" in granted
        or f"{WILDCARD}:{WILDCARD}" in granted
    )


class PermissionEvaluator:
    def __init__(self, store: UserStore, cache: PermissionCache) -> None:
        self._store = store
        self._cache = cache

    def permissions_for(self, user_id: str) -> frozenset[str]:
        """Return user_id's flattened permission set, cached after first load."""
        cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        version = self._cache.version(user_id)
        with store_errors("permission lookup"):
            permissions = self._store.get_user_permissions(user_id)

        granted = frozenset(p.name for p in permissions)
        if not self._cache.set(user_id, granted, version=version):
            logger.debug("Permission set for %s invalidated during load; not cached", user_id)
        return granted

    def has_permission(self, user_id: str, resource: str, action: str) -> bool:
        return permission_matches(self.permissions_for(user_id), resource, action)

    def invalidate(self, user_id: str) -> None:
        self._cache.invalidate(user_id)

    def invalidate_all(self) -> None:
        self._cache.invalidate_all()
