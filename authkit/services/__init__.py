"""Application services built on the auth core and the storage contract."""

from authkit.services.auth import AuthService, RegisterResult
from authkit.services.permissions import PermissionService
from authkit.services.roles import RoleService
from authkit.services.seed import SeedReport, SeedService
from authkit.services.users import UserAdminService

__all__ = [
    "AuthService",
    "RegisterResult",
    "PermissionService",
    "RoleService",
    "SeedReport",
    "SeedService",
    "UserAdminService",
]
