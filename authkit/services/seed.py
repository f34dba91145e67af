"""
Default roles and permissions.

Seeding is idempotent: it only creates what's missing and only adds
missing permissions to an existing admin role, so it is safe to run on
every startup and from several processes at once.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from authkit.auth.admin_role import AdminRoleCache
from authkit.config import Settings
from authkit.core.errors import DuplicateKeyError
from authkit.core.models import Permission, Role
from authkit.storage.base import StorageProvider

logger = logging.getLogger(__name__)


DEFAULT_PERMISSIONS: dict[str, str] = {
    "users:manage": "Create, ban and assign roles to users",
    "roles:manage": "Create, edit and delete roles",
    "permissions:manage": "Create, edit and delete permissions",
}

USER_ROLE_NAME = "user"


class SeedReport(BaseModel):
    permissions_created: list[str] = Field(default_factory=list)
    roles_created: list[str] = Field(default_factory=list)
    admin_role_id: str | None = None


class SeedService:
    def __init__(self, settings: Settings, storage: StorageProvider, admin_roles: AdminRoleCache):
        self.settings = settings
        self.storage = storage
        self.admin_roles = admin_roles

    async def seed_defaults(self) -> SeedReport:
        report = SeedReport()

        permission_ids = []
        for name, description in DEFAULT_PERMISSIONS.items():
            permission = await self._ensure_permission(name, description, report)
            permission_ids.append(permission.id)

        admin = await self._ensure_role(self.settings.admin_role_name, "Full administrative access", permission_ids, report)
        missing = [p for p in permission_ids if p not in admin.permission_ids]
        if missing:
            await self.storage.roles.update_permissions(admin.id, admin.permission_ids + missing)
        report.admin_role_id = admin.id

        for name in dict.fromkeys([USER_ROLE_NAME, self.settings.default_role_name]):
            if name and name != self.settings.admin_role_name:
                await self._ensure_role(name, "Default role for new accounts", [], report)

        if report.roles_created:
            self.admin_roles.invalidate()
        if report.permissions_created or report.roles_created:
            logger.info(
                f"Seeded permissions {report.permissions_created} and roles {report.roles_created}"
            )
        return report

    async def _ensure_permission(self, name: str, description: str, report: SeedReport) -> Permission:
        existing = await self.storage.permissions.find_by_name(name)
        if existing:
            return existing
        try:
            created = await self.storage.permissions.create(name, description)
        except DuplicateKeyError:
            # Another process seeded it between our read and write
            return await self.storage.permissions.find_by_name(name)
        report.permissions_created.append(name)
        return created

    async def _ensure_role(
        self,
        name: str,
        description: str,
        permission_ids: list[str],
        report: SeedReport,
    ) -> Role:
        existing = await self.storage.roles.find_by_name(name)
        if existing:
            return existing
        try:
            created = await self.storage.roles.create(name, description, permission_ids)
        except DuplicateKeyError:
            return await self.storage.roles.find_by_name(name)
        report.roles_created.append(name)
        return created
