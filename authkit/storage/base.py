"""
Storage abstraction layer.

All persistence goes through these interfaces. Any backend that satisfies
them (in-memory, PostgreSQL, MongoDB, ...) is interchangeable without
touching the auth core.

Contract shared by every repository:
- Lookups return None / an empty list when nothing matches, never raise.
- Creates and renames that would break a uniqueness constraint raise
  `DuplicateKeyError` naming the field (email, username, phone,
  role_name, permission_name, external_identity). The core relies on
  these constraints instead of serializing writers in-process.
- Password hashes are only returned by `find_by_email_with_credential`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel

from authkit.core.models import (
    ExternalIdentity,
    Permission,
    RefreshSession,
    Role,
    RoleWithPermissions,
    User,
    UserCredential,
    UserFilter,
    UserWithRoles,
)


# =============================================================================
# Storage Interfaces
# =============================================================================


class PermissionRepository(ABC):
    """Permissions, unique by name."""

    @abstractmethod
    async def create(self, name: str, description: str | None = None) -> Permission:
        pass

    @abstractmethod
    async def find_by_id(self, permission_id: str) -> Permission | None:
        pass

    @abstractmethod
    async def find_by_name(self, name: str) -> Permission | None:
        pass

    @abstractmethod
    async def find_by_ids(self, permission_ids: list[str]) -> list[Permission]:
        """Batch lookup. Unknown ids are skipped."""
        pass

    @abstractmethod
    async def list(self) -> list[Permission]:
        pass

    @abstractmethod
    async def update(
        self,
        permission_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Permission | None:
        pass

    @abstractmethod
    async def delete(self, permission_id: str) -> Permission | None:
        """Delete and return the removed permission, or None."""
        pass


class RoleRepository(ABC):
    """Roles, unique by name, referencing permissions by id."""

    @abstractmethod
    async def create(
        self,
        name: str,
        description: str | None = None,
        permission_ids: list[str] | None = None,
    ) -> Role:
        pass

    @abstractmethod
    async def find_by_id(self, role_id: str) -> Role | None:
        pass

    @abstractmethod
    async def find_by_name(self, name: str) -> Role | None:
        pass

    @abstractmethod
    async def find_by_ids(self, role_ids: list[str]) -> list[Role]:
        """Batch lookup. Unknown ids are skipped."""
        pass

    @abstractmethod
    async def list_with_permissions(self) -> list[RoleWithPermissions]:
        """All roles with permissions resolved."""
        pass

    @abstractmethod
    async def update(
        self,
        role_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Role | None:
        pass

    @abstractmethod
    async def update_permissions(self, role_id: str, permission_ids: list[str]) -> Role | None:
        """Replace the role's permission set."""
        pass

    @abstractmethod
    async def delete(self, role_id: str) -> Role | None:
        """Delete and return the removed role, or None."""
        pass

    @abstractmethod
    async def remove_permission(self, permission_id: str) -> int:
        """Drop a permission id from every role. Returns roles touched."""
        pass


async def populate_permissions(
    permissions: PermissionRepository,
    roles: list[Role],
) -> list[RoleWithPermissions]:
    """Resolve permissions for many roles with one batched lookup."""
    wanted = [pid for role in roles for pid in role.permission_ids]
    by_id = {p.id: p for p in await permissions.find_by_ids(wanted)}
    return [
        RoleWithPermissions(
            id=role.id,
            name=role.name,
            description=role.description,
            permissions=[by_id[p] for p in role.permission_ids if p in by_id],
        )
        for role in roles
    ]


class UserRepository(ABC):
    """Users, unique by email, username and (optional) phone."""

    @abstractmethod
    async def create(self, user: User, password_hash: str | None = None) -> User:
        pass

    @abstractmethod
    async def find_by_id(self, user_id: str) -> User | None:
        pass

    @abstractmethod
    async def find_by_email(self, email: str) -> User | None:
        pass

    @abstractmethod
    async def find_by_email_with_credential(self, email: str) -> UserCredential | None:
        """The only read path that returns the password hash."""
        pass

    @abstractmethod
    async def find_by_username(self, username: str) -> User | None:
        pass

    @abstractmethod
    async def find_by_phone(self, phone_number: str) -> User | None:
        pass

    @abstractmethod
    async def find_by_id_with_roles_and_permissions(self, user_id: str) -> UserWithRoles | None:
        """User -> roles -> permissions, resolved with batched lookups."""
        pass

    @abstractmethod
    async def list(self, filters: UserFilter | None = None) -> list[UserWithRoles]:
        """Users matching the filter, roles resolved."""
        pass

    @abstractmethod
    async def update(self, user_id: str, **fields) -> User | None:
        """Partial update of profile/flag/role fields."""
        pass

    @abstractmethod
    async def set_password(self, user_id: str, password_hash: str, changed_at: datetime) -> User | None:
        pass

    @abstractmethod
    async def remove_role(self, role_id: str) -> int:
        """Drop a role id from every user. Returns users touched."""
        pass


class ExternalIdentityRepository(ABC):
    """Provider identities, unique by (provider, subject)."""

    @abstractmethod
    async def create(self, identity: ExternalIdentity) -> ExternalIdentity:
        pass

    @abstractmethod
    async def find(self, provider: str, subject: str) -> ExternalIdentity | None:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> list[ExternalIdentity]:
        pass


class RefreshSessionRepository(ABC):
    """
    Rotation state for refresh-token chains.

    `rotate` is the one operation that must be atomic: a compare-and-swap
    of the chain's marker. Two concurrent refreshes with the same token can
    therefore never both succeed.
    """

    @abstractmethod
    async def create(self, session: RefreshSession) -> RefreshSession:
        pass

    @abstractmethod
    async def get(self, family_id: str) -> RefreshSession | None:
        pass

    @abstractmethod
    async def rotate(
        self,
        family_id: str,
        expected_marker: str,
        new_marker: str,
        expires_at: datetime,
    ) -> bool:
        """Swap the marker iff the chain is live and holds `expected_marker`."""
        pass

    @abstractmethod
    async def revoke(self, family_id: str) -> bool:
        pass

    @abstractmethod
    async def revoke_all_for_user(self, user_id: str) -> int:
        pass


# =============================================================================
# Storage Provider (dependency injection container)
# =============================================================================


class StorageProvider(BaseModel):
    """
    Container for all repositories.

    Initialize once at app startup with appropriate implementations.
    Services receive this and use the interfaces without knowing
    the underlying implementation.
    """

    model_config = {"arbitrary_types_allowed": True}

    users: UserRepository
    roles: RoleRepository
    permissions: PermissionRepository
    identities: ExternalIdentityRepository
    sessions: RefreshSessionRepository
