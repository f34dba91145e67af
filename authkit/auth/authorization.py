"""
Authorization model - the "is this subject permitted" decision.

RBAC only: permissions are granted to roles, roles to users. There is no
role hierarchy; if one role should imply another's rights, assign the
permissions to both.

Decisions fail closed. A role id that no longer resolves to a stored role
contributes nothing, so a subject whose every role is gone is denied
everything.

Role -> permission-name sets are cached per role with a short TTL and are
invalidated explicitly by the admin services whenever roles or permissions
change. Each cached set is an immutable snapshot, so a check running
concurrently with an edit sees either the old set or the new one.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Union

from authkit.auth.admin_role import AdminRoleCache
from authkit.core.errors import AdminRoleMissingError
from authkit.storage.base import PermissionRepository, RoleRepository

logger = logging.getLogger(__name__)


# =============================================================================
# Requirements
# =============================================================================


@dataclass(frozen=True)
class RoleRequirement:
    """Subject must hold this exact role id."""
    role_id: str


@dataclass(frozen=True)
class PermissionRequirement:
    """Some role of the subject must grant this permission name."""
    name: str


Requirement = Union[RoleRequirement, PermissionRequirement]


# =============================================================================
# Authorizer
# =============================================================================


class Authorizer:
    """Decides whether a set of role ids satisfies a requirement."""

    def __init__(
        self,
        roles: RoleRepository,
        permissions: PermissionRepository,
        admin_roles: AdminRoleCache,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.roles = roles
        self.permissions = permissions
        self.admin_roles = admin_roles
        self.ttl_seconds = ttl_seconds
        self.clock = clock

        self._cache: dict[str, tuple[frozenset[str], float]] = {}
        self._generation = 0

    async def is_authorized(self, subject_role_ids: Iterable[str], required: Requirement) -> bool:
        role_ids = set(subject_role_ids)
        if isinstance(required, PermissionRequirement):
            return await self.has_permission(role_ids, required.name)
        if isinstance(required, RoleRequirement):
            return await self.has_role(role_ids, required.role_id)
        raise TypeError(f"Unsupported requirement: {required!r}")

    async def has_permission(self, subject_role_ids: Iterable[str], permission_name: str) -> bool:
        resolved = await self.resolve(subject_role_ids)
        return any(permission_name in names for names in resolved.values())

    async def has_role(self, subject_role_ids: Iterable[str], role_id: str) -> bool:
        if role_id not in set(subject_role_ids):
            return False
        # The role must still exist; a deleted role grants nothing
        return role_id in await self.resolve([role_id])

    async def is_admin(self, subject_role_ids: Iterable[str]) -> bool:
        """
        True when the subject holds the configured admin role.

        Raises:
            AdminRoleMissingError: no admin role is configured in storage
        """
        admin_id = await self.admin_roles.load_admin_role_id()
        return admin_id in set(subject_role_ids)

    async def permissions_for(self, subject_role_ids: Iterable[str]) -> set[str]:
        names: set[str] = set()
        for granted in (await self.resolve(subject_role_ids)).values():
            names.update(granted)
        return names

    async def resolve(self, subject_role_ids: Iterable[str]) -> dict[str, frozenset[str]]:
        """
        Map each resolvable role id to its permission names.

        Unknown ids are left out of the result.
        """
        wanted = list(dict.fromkeys(subject_role_ids))
        now = self.clock()
        resolved: dict[str, frozenset[str]] = {}
        missing: list[str] = []

        for role_id in wanted:
            entry = self._cache.get(role_id)
            if entry and now < entry[1]:
                resolved[role_id] = entry[0]
            else:
                missing.append(role_id)

        if missing:
            generation = self._generation
            fetched = await self._fetch(missing)
            if generation == self._generation:
                expires_at = self.clock() + self.ttl_seconds
                for role_id, names in fetched.items():
                    self._cache[role_id] = (names, expires_at)
            resolved.update(fetched)

            unresolved = set(missing) - set(fetched)
            if unresolved:
                logger.warning(f"Ignoring unresolvable role ids: {sorted(unresolved)}")

        return resolved

    async def _fetch(self, role_ids: list[str]) -> dict[str, frozenset[str]]:
        # Two batched lookups regardless of how many roles are asked for
        roles = await self.roles.find_by_ids(role_ids)
        permission_ids = [pid for role in roles for pid in role.permission_ids]
        names_by_id = {p.id: p.name for p in await self.permissions.find_by_ids(permission_ids)}
        return {
            role.id: frozenset(names_by_id[p] for p in role.permission_ids if p in names_by_id)
            for role in roles
        }

    def invalidate_role(self, role_id: str) -> None:
        self._generation += 1
        self._cache.pop(role_id, None)

    def invalidate_all(self) -> None:
        """Drop every cached role (e.g. after a permission rename or delete)."""
        self._generation += 1
        self._cache.clear()


async def default_role_ids(roles: RoleRepository, role_name: str) -> list[str]:
    """
    Role ids a brand-new user starts with.

    Empty name means no role. A configured name that doesn't resolve is a
    deployment error, not something to silently skip.
    """
    if not role_name:
        return []
    role = await roles.find_by_name(role_name)
    if role is None:
        logger.error(f"Default role {role_name!r} not found; seed data may be missing")
        raise AdminRoleMissingError(f"Default role '{role_name}' not configured")
    return [role.id]
