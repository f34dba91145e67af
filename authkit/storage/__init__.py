"""
Storage abstractions.

The auth core only talks to the repository interfaces in `base`;
`memory` provides the in-process implementation.
"""

from authkit.storage.base import (
    ExternalIdentityRepository,
    PermissionRepository,
    RefreshSessionRepository,
    RoleRepository,
    StorageProvider,
    UserRepository,
)
from authkit.storage.memory import create_memory_storage

__all__ = [
    "ExternalIdentityRepository",
    "PermissionRepository",
    "RefreshSessionRepository",
    "RoleRepository",
    "StorageProvider",
    "UserRepository",
    "create_memory_storage",
]
