"""
Role administration.

Every mutation drops the cached permission set of the touched role.
Creating, renaming or deleting a role also drops the cached admin-role id,
so a recreated admin role is picked up on the next check. The admin role
itself cannot be deleted through here; every admin endpoint depends on it.
"""

from __future__ import annotations

import logging

from authkit.auth.admin_role import AdminRoleCache
from authkit.auth.authorization import Authorizer
from authkit.core.errors import (
    AdminRoleMissingError,
    AuthErrorCode,
    ConflictError,
    DuplicateKeyError,
    NotFoundError,
    conflict_from_duplicate,
)
from authkit.core.models import Role, RoleWithPermissions
from authkit.storage.base import PermissionRepository, StorageProvider, populate_permissions

logger = logging.getLogger(__name__)


async def require_permissions(permissions: PermissionRepository, permission_ids: list[str]) -> list[str]:
    """Every id must name an existing permission. Returns the ids de-duplicated."""
    wanted = list(dict.fromkeys(permission_ids))
    found = {p.id for p in await permissions.find_by_ids(wanted)}
    missing = [p for p in wanted if p not in found]
    if missing:
        raise NotFoundError(
            "Permission not found",
            code=AuthErrorCode.PERMISSION_NOT_FOUND,
            details={"permission_ids": missing},
        )
    return wanted


class RoleService:
    def __init__(self, storage: StorageProvider, authorizer: Authorizer, admin_roles: AdminRoleCache):
        self.storage = storage
        self.authorizer = authorizer
        self.admin_roles = admin_roles

    async def create(
        self,
        name: str,
        description: str | None = None,
        permission_ids: list[str] | None = None,
    ) -> RoleWithPermissions:
        permission_ids = await require_permissions(self.storage.permissions, permission_ids or [])
        try:
            role = await self.storage.roles.create(name, description, permission_ids)
        except DuplicateKeyError as e:
            raise conflict_from_duplicate(e)

        self.authorizer.invalidate_role(role.id)
        self.admin_roles.invalidate()
        logger.info(f"Created role {role.id} ({role.name})")
        return await self._resolve(role)

    async def list(self) -> list[RoleWithPermissions]:
        return await self.storage.roles.list_with_permissions()

    async def get(self, role_id: str) -> RoleWithPermissions:
        return await self._resolve(await self._find(role_id))

    async def update(
        self,
        role_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> RoleWithPermissions:
        current = await self._find(role_id)
        try:
            role = await self.storage.roles.update(role_id, name=name, description=description)
        except DuplicateKeyError as e:
            raise conflict_from_duplicate(e)
        if role is None:
            raise _role_not_found()

        self.authorizer.invalidate_role(role_id)
        if role.name != current.name:
            self.admin_roles.invalidate()
            logger.info(f"Renamed role {role_id}: {current.name} -> {role.name}")
        return await self._resolve(role)

    async def set_permissions(self, role_id: str, permission_ids: list[str]) -> RoleWithPermissions:
        """Replace the role's permission set. Applies to tokens already issued."""
        permission_ids = await require_permissions(self.storage.permissions, permission_ids)
        role = await self.storage.roles.update_permissions(role_id, permission_ids)
        if role is None:
            raise _role_not_found()

        self.authorizer.invalidate_role(role_id)
        logger.info(f"Set permissions of role {role_id}: {permission_ids}")
        return await self._resolve(role)

    async def delete(self, role_id: str) -> Role:
        """Delete a role and strip it from every user holding it. The admin role is refused."""
        await self._refuse_admin_role(role_id)
        role = await self.storage.roles.delete(role_id)
        if role is None:
            raise _role_not_found()

        stripped = await self.storage.users.remove_role(role_id)
        self.authorizer.invalidate_role(role_id)
        self.admin_roles.invalidate()
        logger.info(f"Deleted role {role_id} ({role.name}); removed from {stripped} user(s)")
        return role

    async def _refuse_admin_role(self, role_id: str) -> None:
        try:
            admin_id = await self.admin_roles.load_admin_role_id()
        except AdminRoleMissingError:
            return
        if role_id == admin_id:
            logger.warning(f"Refused to delete admin role {role_id}")
            raise ConflictError(
                "The admin role cannot be deleted",
                code=AuthErrorCode.ADMIN_ROLE_PROTECTED,
                details={"role_id": role_id},
            )

    async def _find(self, role_id: str) -> Role:
        role = await self.storage.roles.find_by_id(role_id)
        if role is None:
            raise _role_not_found()
        return role

    async def _resolve(self, role: Role) -> RoleWithPermissions:
        return (await populate_permissions(self.storage.permissions, [role]))[0]


def _role_not_found() -> NotFoundError:
    return NotFoundError("Role not found", code=AuthErrorCode.ROLE_NOT_FOUND)
