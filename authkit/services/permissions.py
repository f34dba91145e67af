"""Permission administration."""

from __future__ import annotations

import logging

from authkit.auth.authorization import Authorizer
from authkit.core.errors import AuthErrorCode, DuplicateKeyError, NotFoundError, conflict_from_duplicate
from authkit.core.models import Permission
from authkit.storage.base import StorageProvider

logger = logging.getLogger(__name__)


class PermissionService:
    """
    CRUD for permissions.

    Roles reference permissions by id, so a rename needs no role rewrite,
    only a flush of the cached name sets. Deleting a permission also removes
    it from every role.
    """

    def __init__(self, storage: StorageProvider, authorizer: Authorizer):
        self.storage = storage
        self.authorizer = authorizer

    async def create(self, name: str, description: str | None = None) -> Permission:
        try:
            permission = await self.storage.permissions.create(name, description)
        except DuplicateKeyError as e:
            raise conflict_from_duplicate(e)
        self.authorizer.invalidate_all()
        logger.info(f"Created permission {permission.id} ({permission.name})")
        return permission

    async def list(self) -> list[Permission]:
        return await self.storage.permissions.list()

    async def get(self, permission_id: str) -> Permission:
        permission = await self.storage.permissions.find_by_id(permission_id)
        if permission is None:
            raise _permission_not_found()
        return permission

    async def update(
        self,
        permission_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Permission:
        try:
            permission = await self.storage.permissions.update(permission_id, name=name, description=description)
        except DuplicateKeyError as e:
            raise conflict_from_duplicate(e)
        if permission is None:
            raise _permission_not_found()

        self.authorizer.invalidate_all()
        return permission

    async def delete(self, permission_id: str) -> Permission:
        permission = await self.storage.permissions.delete(permission_id)
        if permission is None:
            raise _permission_not_found()

        touched = await self.storage.roles.remove_permission(permission_id)
        self.authorizer.invalidate_all()
        logger.info(f"Deleted permission {permission.name}; removed from {touched} role(s)")
        return permission


def _permission_not_found() -> NotFoundError:
    return NotFoundError("Permission not found", code=AuthErrorCode.PERMISSION_NOT_FOUND)
