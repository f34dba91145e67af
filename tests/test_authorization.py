"""
Tests for the authorization model and the admin-role cache.

Core principle: when in doubt, deny.
"""

import asyncio

import pytest

from authkit.auth.admin_role import AdminRoleCache
from authkit.auth.authorization import Authorizer, PermissionRequirement, RoleRequirement
from authkit.core.errors import AdminRoleMissingError, AuthErrorCode
from authkit.storage.memory import InMemoryRoleRepository


# =============================================================================
# Fixtures
# =============================================================================


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class SlowRoleRepository(InMemoryRoleRepository):
    """Role store whose name lookups yield to the event loop."""

    async def find_by_name(self, name):
        await asyncio.sleep(0.01)
        return await super().find_by_name(name)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def admin_roles(storage, clock):
    return AdminRoleCache(storage.roles, role_name="admin", ttl_seconds=60, clock=clock)


@pytest.fixture
def authorizer(storage, admin_roles, clock):
    return Authorizer(storage.roles, storage.permissions, admin_roles, ttl_seconds=30, clock=clock)


@pytest.fixture
async def editor(storage):
    write = await storage.permissions.create("posts:write")
    return await storage.roles.create("editor", permission_ids=[write.id])


# =============================================================================
# Decisions
# =============================================================================


class TestAuthorizer:
    async def test_permission_granted_through_role(self, authorizer, editor):
        assert await authorizer.has_permission([editor.id], "posts:write")
        assert not await authorizer.has_permission([editor.id], "posts:delete")

    async def test_no_roles_no_access(self, authorizer, editor):
        assert not await authorizer.has_permission([], "posts:write")

    async def test_unresolvable_roles_fail_closed(self, authorizer, editor):
        assert not await authorizer.has_permission(["role_deleted", "role_bogus"], "posts:write")
        assert await authorizer.permissions_for(["role_deleted"]) == set()

    async def test_one_dead_role_does_not_spoil_a_live_one(self, authorizer, editor):
        assert await authorizer.has_permission(["role_deleted", editor.id], "posts:write")

    async def test_role_form(self, authorizer, editor):
        assert await authorizer.is_authorized([editor.id], RoleRequirement(editor.id))
        assert not await authorizer.is_authorized([], RoleRequirement(editor.id))

    async def test_role_form_requires_role_to_exist(self, authorizer, storage, editor):
        await storage.roles.delete(editor.id)
        authorizer.invalidate_role(editor.id)
        assert not await authorizer.is_authorized([editor.id], RoleRequirement(editor.id))

    async def test_no_role_hierarchy(self, authorizer, storage, editor):
        # Holding a role named like a superset grants nothing implicitly
        chief = await storage.roles.create("chief-editor")
        assert not await authorizer.is_authorized([chief.id], PermissionRequirement("posts:write"))

    async def test_permission_edits_apply_after_invalidation(self, authorizer, storage, editor):
        assert await authorizer.has_permission([editor.id], "posts:write")

        await storage.roles.update_permissions(editor.id, [])
        authorizer.invalidate_role(editor.id)

        assert not await authorizer.has_permission([editor.id], "posts:write")

    async def test_cache_expires(self, authorizer, storage, editor, clock):
        assert await authorizer.has_permission([editor.id], "posts:write")
        await storage.roles.update_permissions(editor.id, [])

        clock.advance(31)
        assert not await authorizer.has_permission([editor.id], "posts:write")

    async def test_permission_rename_seen_after_invalidate_all(self, authorizer, storage, editor):
        perm = await storage.permissions.find_by_name("posts:write")
        assert await authorizer.has_permission([editor.id], "posts:write")

        await storage.permissions.update(perm.id, name="articles:write")
        authorizer.invalidate_all()

        assert await authorizer.has_permission([editor.id], "articles:write")
        assert not await authorizer.has_permission([editor.id], "posts:write")


# =============================================================================
# Admin role cache
# =============================================================================


class TestAdminRoleCache:
    async def test_missing_admin_role(self, admin_roles):
        with pytest.raises(AdminRoleMissingError) as exc:
            await admin_roles.load_admin_role_id()
        assert exc.value.code == AuthErrorCode.DEFAULT_ROLE_MISSING

    async def test_cached_between_calls(self, storage, admin_roles):
        admin = await storage.roles.create("admin")
        assert await admin_roles.load_admin_role_id() == admin.id
        assert await admin_roles.load_admin_role_id() == admin.id
        assert admin_roles.lookups == 1

    async def test_recreated_admin_role_is_picked_up(self, storage, admin_roles, authorizer):
        old = await storage.roles.create("admin")
        assert await authorizer.is_admin([old.id])

        await storage.roles.delete(old.id)
        new = await storage.roles.create("admin")
        admin_roles.invalidate()

        assert await authorizer.is_admin([new.id])
        assert not await authorizer.is_admin([old.id])

    async def test_ttl_bounds_staleness(self, storage, admin_roles, authorizer, clock):
        old = await storage.roles.create("admin")
        assert await authorizer.is_admin([old.id])

        # No invalidation: the stale id survives only until the TTL runs out
        await storage.roles.delete(old.id)
        new = await storage.roles.create("admin")
        clock.advance(61)

        assert await authorizer.is_admin([new.id])
        assert not await authorizer.is_admin([old.id])

    async def test_renamed_admin_role_keeps_its_id(self, storage, admin_roles, authorizer, clock):
        admin = await storage.roles.create("admin")
        assert await authorizer.is_admin([admin.id])

        await storage.roles.update(admin.id, name="superuser")
        admin_roles.invalidate()
        assert await authorizer.is_admin([admin.id])

        clock.advance(61)
        assert await authorizer.is_admin([admin.id])

    async def test_role_taking_the_name_does_not_steal_admin(self, storage, admin_roles):
        admin = await storage.roles.create("admin")
        await admin_roles.load_admin_role_id()

        await storage.roles.update(admin.id, name="superuser")
        await storage.roles.create("admin")
        admin_roles.invalidate()

        assert await admin_roles.load_admin_role_id() == admin.id

    async def test_pinned_by_id(self, storage, clock):
        await storage.roles.create("admin")
        pinned = await storage.roles.create("superusers")
        cache = AdminRoleCache(storage.roles, role_name="admin", role_id=pinned.id, clock=clock)
        assert await cache.load_admin_role_id() == pinned.id

    async def test_concurrent_misses_single_flight(self, storage, clock):
        roles = SlowRoleRepository(storage.permissions)
        admin = await roles.create("admin")
        cache = AdminRoleCache(roles, role_name="admin", clock=clock)

        results = await asyncio.gather(*(cache.load_admin_role_id() for _ in range(10)))

        assert results == [admin.id] * 10
        assert cache.lookups == 1

    async def test_invalidate_during_fetch_is_not_overwritten(self, storage, clock):
        roles = SlowRoleRepository(storage.permissions)
        await roles.create("admin")
        cache = AdminRoleCache(roles, role_name="admin", clock=clock)

        pending = asyncio.create_task(cache.load_admin_role_id())
        await asyncio.sleep(0)
        cache.invalidate()
        await pending

        await cache.load_admin_role_id()
        assert cache.lookups == 2
