"""
Admin role resolution.

The admin role is configured by name (or pinned by id) but every check
compares role *ids*, so renaming the role can't strip admins of access.
The resolved id is the one piece of shared mutable state in the core:

- Concurrent cache misses collapse into a single store lookup.
- The value expires after a short TTL, so a long-lived process re-confirms
  the role still exists instead of trusting an id forever.
- Role create/delete/rename call `invalidate()` so the next check re-reads
  immediately. Readers racing an invalidation may see the previous value
  once; they never see a half-written one.
- Once resolved, the id is re-confirmed by id on every refresh. The name is
  only consulted again when that id is gone (deleted, then recreated).
  A renamed admin role therefore stays the admin role.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from authkit.core.errors import AdminRoleMissingError
from authkit.storage.base import RoleRepository

logger = logging.getLogger(__name__)


class AdminRoleCache:
    """Process-wide cache of the admin role id."""

    def __init__(
        self,
        roles: RoleRepository,
        role_name: str = "admin",
        role_id: str | None = None,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.roles = roles
        self.role_name = role_name
        self.pinned_id = role_id or None
        self.ttl_seconds = ttl_seconds
        self.clock = clock

        self._value: str | None = None
        self._expires_at = 0.0
        self._generation = 0
        self._known_id: str | None = None  # last resolved id, kept across invalidate()
        self._lock = asyncio.Lock()
        self.lookups = 0  # store round-trips, exposed for diagnostics

    def _fresh(self) -> str | None:
        if self._value is not None and self.clock() < self._expires_at:
            return self._value
        return None

    async def load_admin_role_id(self) -> str:
        """
        Return the admin role id, fetching it at most once per TTL window.

        Raises:
            AdminRoleMissingError: the configured admin role doesn't exist
        """
        cached = self._fresh()
        if cached is not None:
            return cached

        async with self._lock:
            # Someone else may have filled it while we waited
            cached = self._fresh()
            if cached is not None:
                return cached

            generation = self._generation
            role_id = await self._fetch()

            # An invalidate() during the fetch wins; the next caller re-reads
            if generation == self._generation:
                self._value = role_id
                self._expires_at = self.clock() + self.ttl_seconds
            return role_id

    async def _fetch(self) -> str:
        self.lookups += 1
        role = None
        known = self.pinned_id or self._known_id
        if known:
            role = await self.roles.find_by_id(known)
        if role is None and not self.pinned_id:
            role = await self.roles.find_by_name(self.role_name)
        if role is None:
            logger.error(
                f"Admin role not found (id={self.pinned_id!r}, name={self.role_name!r}); "
                "seed data may be missing"
            )
            raise AdminRoleMissingError("Admin role not seeded")
        if known and role.id != known:
            logger.info(f"Admin role re-resolved by name: {known} -> {role.id}")
        self._known_id = role.id
        return role.id

    def invalidate(self) -> None:
        """Drop the cached id; the next lookup goes to storage."""
        self._generation += 1
        self._value = None
        self._expires_at = 0.0
        logger.info("Admin role cache invalidated")
