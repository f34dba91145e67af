"""
In-memory storage implementations.

These satisfy the repository contract without any external services and
are what the test-suite and local development run against. Uniqueness is
enforced with indexes updated under a per-repository lock, mirroring the
unique indexes a real database would carry.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from authkit.core.errors import DuplicateKeyError
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
from authkit.core.utils import normalize_email, utc_now
from authkit.storage.base import (
    ExternalIdentityRepository,
    PermissionRepository,
    RefreshSessionRepository,
    RoleRepository,
    StorageProvider,
    UserRepository,
    populate_permissions,
)


# =============================================================================
# Permissions
# =============================================================================


class InMemoryPermissionRepository(PermissionRepository):
    def __init__(self):
        self._data: dict[str, Permission] = {}
        self._by_name: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create(self, name: str, description: str | None = None) -> Permission:
        async with self._lock:
            if name in self._by_name:
                raise DuplicateKeyError("permission_name")
            perm = Permission(name=name, description=description)
            self._data[perm.id] = perm
            self._by_name[name] = perm.id
        return perm.model_copy()

    async def find_by_id(self, permission_id: str) -> Permission | None:
        perm = self._data.get(permission_id)
        return perm.model_copy() if perm else None

    async def find_by_name(self, name: str) -> Permission | None:
        perm_id = self._by_name.get(name)
        return await self.find_by_id(perm_id) if perm_id else None

    async def find_by_ids(self, permission_ids: list[str]) -> list[Permission]:
        return [self._data[p].model_copy() for p in dict.fromkeys(permission_ids) if p in self._data]

    async def list(self) -> list[Permission]:
        return [p.model_copy() for p in self._data.values()]

    async def update(
        self,
        permission_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Permission | None:
        async with self._lock:
            perm = self._data.get(permission_id)
            if not perm:
                return None
            if name is not None and name != perm.name:
                if name in self._by_name:
                    raise DuplicateKeyError("permission_name")
                del self._by_name[perm.name]
                self._by_name[name] = perm.id
                perm.name = name
            if description is not None:
                perm.description = description
            perm.updated_at = utc_now()
        return perm.model_copy()

    async def delete(self, permission_id: str) -> Permission | None:
        async with self._lock:
            perm = self._data.pop(permission_id, None)
            if perm:
                self._by_name.pop(perm.name, None)
        return perm


# =============================================================================
# Roles
# =============================================================================


class InMemoryRoleRepository(RoleRepository):
    def __init__(self, permissions: PermissionRepository):
        self._data: dict[str, Role] = {}
        self._by_name: dict[str, str] = {}
        self._permissions = permissions
        self._lock = asyncio.Lock()

    async def create(
        self,
        name: str,
        description: str | None = None,
        permission_ids: list[str] | None = None,
    ) -> Role:
        async with self._lock:
            if name in self._by_name:
                raise DuplicateKeyError("role_name")
            role = Role(
                name=name,
                description=description,
                permission_ids=list(dict.fromkeys(permission_ids or [])),
            )
            self._data[role.id] = role
            self._by_name[name] = role.id
        return role.model_copy(deep=True)

    async def find_by_id(self, role_id: str) -> Role | None:
        role = self._data.get(role_id)
        return role.model_copy(deep=True) if role else None

    async def find_by_name(self, name: str) -> Role | None:
        role_id = self._by_name.get(name)
        return await self.find_by_id(role_id) if role_id else None

    async def find_by_ids(self, role_ids: list[str]) -> list[Role]:
        return [self._data[r].model_copy(deep=True) for r in dict.fromkeys(role_ids) if r in self._data]

    async def list_with_permissions(self) -> list[RoleWithPermissions]:
        roles = [r.model_copy(deep=True) for r in self._data.values()]
        return await populate_permissions(self._permissions, roles)

    async def update(
        self,
        role_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Role | None:
        async with self._lock:
            role = self._data.get(role_id)
            if not role:
                return None
            if name is not None and name != role.name:
                if name in self._by_name:
                    raise DuplicateKeyError("role_name")
                del self._by_name[role.name]
                self._by_name[name] = role.id
                role.name = name
            if description is not None:
                role.description = description
            role.updated_at = utc_now()
        return role.model_copy(deep=True)

    async def update_permissions(self, role_id: str, permission_ids: list[str]) -> Role | None:
        async with self._lock:
            role = self._data.get(role_id)
            if not role:
                return None
            role.permission_ids = list(dict.fromkeys(permission_ids))
            role.updated_at = utc_now()
        return role.model_copy(deep=True)

    async def delete(self, role_id: str) -> Role | None:
        async with self._lock:
            role = self._data.pop(role_id, None)
            if role:
                self._by_name.pop(role.name, None)
        return role

    async def remove_permission(self, permission_id: str) -> int:
        touched = 0
        async with self._lock:
            for role in self._data.values():
                if permission_id in role.permission_ids:
                    role.permission_ids = [p for p in role.permission_ids if p != permission_id]
                    role.updated_at = utc_now()
                    touched += 1
        return touched


# =============================================================================
# Users
# =============================================================================


class InMemoryUserRepository(UserRepository):
    """
    Users with email/username/phone unique indexes.

    Role population is done the way a document store would do it without
    joins: fetch users, batch-fetch every referenced role, then batch-fetch
    every referenced permission.
    """

    UPDATABLE = {
        "full_name",
        "phone_number",
        "username",
        "role_ids",
        "is_verified",
        "is_banned",
    }

    def __init__(self, roles: RoleRepository, permissions: PermissionRepository):
        self._data: dict[str, User] = {}
        self._hashes: dict[str, str | None] = {}
        self._by_email: dict[str, str] = {}
        self._by_username: dict[str, str] = {}
        self._by_phone: dict[str, str] = {}
        self._roles = roles
        self._permissions = permissions
        self._lock = asyncio.Lock()

    async def create(self, user: User, password_hash: str | None = None) -> User:
        user = user.model_copy(deep=True)
        user.email = normalize_email(user.email)
        username_key = user.username.lower()
        async with self._lock:
            if user.email in self._by_email:
                raise DuplicateKeyError("email")
            if username_key in self._by_username:
                raise DuplicateKeyError("username")
            if user.phone_number and user.phone_number in self._by_phone:
                raise DuplicateKeyError("phone")
            self._data[user.id] = user
            self._hashes[user.id] = password_hash
            self._by_email[user.email] = user.id
            self._by_username[username_key] = user.id
            if user.phone_number:
                self._by_phone[user.phone_number] = user.id
        return user.model_copy(deep=True)

    async def find_by_id(self, user_id: str) -> User | None:
        user = self._data.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def find_by_email(self, email: str) -> User | None:
        user_id = self._by_email.get(normalize_email(email))
        return await self.find_by_id(user_id) if user_id else None

    async def find_by_email_with_credential(self, email: str) -> UserCredential | None:
        user = await self.find_by_email(email)
        if not user:
            return None
        return UserCredential(user=user, password_hash=self._hashes.get(user.id))

    async def find_by_username(self, username: str) -> User | None:
        user_id = self._by_username.get(username.lower())
        return await self.find_by_id(user_id) if user_id else None

    async def find_by_phone(self, phone_number: str) -> User | None:
        user_id = self._by_phone.get(phone_number)
        return await self.find_by_id(user_id) if user_id else None

    async def find_by_id_with_roles_and_permissions(self, user_id: str) -> UserWithRoles | None:
        user = await self.find_by_id(user_id)
        if not user:
            return None
        return (await self._populate([user]))[0]

    async def list(self, filters: UserFilter | None = None) -> list[UserWithRoles]:
        filters = filters or UserFilter()
        users = list(self._data.values())
        if filters.email:
            users = [u for u in users if u.email == normalize_email(filters.email)]
        if filters.username:
            users = [u for u in users if u.username.lower() == filters.username.lower()]
        users = users[filters.offset:filters.offset + filters.limit]
        return await self._populate([u.model_copy(deep=True) for u in users])

    async def update(self, user_id: str, **fields) -> User | None:
        unknown = set(fields) - self.UPDATABLE
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        async with self._lock:
            user = self._data.get(user_id)
            if not user:
                return None

            new_username = fields.get("username")
            rename = bool(new_username) and new_username.lower() != user.username.lower()
            new_phone = fields.get("phone_number")
            rephone = "phone_number" in fields and new_phone != user.phone_number

            # Check every index before touching any of them
            if rename and new_username.lower() in self._by_username:
                raise DuplicateKeyError("username")
            if rephone and new_phone and new_phone in self._by_phone:
                raise DuplicateKeyError("phone")

            if rename:
                del self._by_username[user.username.lower()]
                self._by_username[new_username.lower()] = user.id
            if rephone:
                if user.phone_number:
                    del self._by_phone[user.phone_number]
                if new_phone:
                    self._by_phone[new_phone] = user.id

            for key, value in fields.items():
                setattr(user, key, list(value) if key == "role_ids" else value)
            user.updated_at = utc_now()
        return user.model_copy(deep=True)

    async def set_password(self, user_id: str, password_hash: str, changed_at: datetime) -> User | None:
        async with self._lock:
            user = self._data.get(user_id)
            if not user:
                return None
            self._hashes[user_id] = password_hash
            user.password_changed_at = changed_at
            user.updated_at = utc_now()
        return user.model_copy(deep=True)

    async def remove_role(self, role_id: str) -> int:
        touched = 0
        async with self._lock:
            for user in self._data.values():
                if role_id in user.role_ids:
                    user.role_ids = [r for r in user.role_ids if r != role_id]
                    user.updated_at = utc_now()
                    touched += 1
        return touched

    async def _populate(self, users: list[User]) -> list[UserWithRoles]:
        role_ids = [rid for user in users for rid in user.role_ids]
        roles = await self._roles.find_by_ids(role_ids)
        resolved = {r.id: r for r in await populate_permissions(self._permissions, roles)}
        return [
            UserWithRoles(user=user, roles=[resolved[r] for r in user.role_ids if r in resolved])
            for user in users
        ]


# =============================================================================
# External identities
# =============================================================================


class InMemoryExternalIdentityRepository(ExternalIdentityRepository):
    def __init__(self):
        self._data: dict[tuple[str, str], ExternalIdentity] = {}
        self._lock = asyncio.Lock()

    async def create(self, identity: ExternalIdentity) -> ExternalIdentity:
        key = (identity.provider, identity.subject)
        async with self._lock:
            if key in self._data:
                raise DuplicateKeyError("external_identity")
            self._data[key] = identity.model_copy()
        return identity.model_copy()

    async def find(self, provider: str, subject: str) -> ExternalIdentity | None:
        identity = self._data.get((provider, subject))
        return identity.model_copy() if identity else None

    async def list_for_user(self, user_id: str) -> list[ExternalIdentity]:
        return [i.model_copy() for i in self._data.values() if i.user_id == user_id]


# =============================================================================
# Refresh sessions
# =============================================================================


class InMemoryRefreshSessionRepository(RefreshSessionRepository):
    def __init__(self):
        self._data: dict[str, RefreshSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: RefreshSession) -> RefreshSession:
        async with self._lock:
            self._data[session.family_id] = session.model_copy()
        return session.model_copy()

    async def get(self, family_id: str) -> RefreshSession | None:
        session = self._data.get(family_id)
        return session.model_copy() if session else None

    async def rotate(
        self,
        family_id: str,
        expected_marker: str,
        new_marker: str,
        expires_at: datetime,
    ) -> bool:
        async with self._lock:
            session = self._data.get(family_id)
            if not session or session.revoked or session.marker != expected_marker:
                return False
            session.marker = new_marker
            session.expires_at = expires_at
            session.rotated_at = utc_now()
            return True

    async def revoke(self, family_id: str) -> bool:
        async with self._lock:
            session = self._data.get(family_id)
            if not session or session.revoked:
                return False
            session.revoked = True
            return True

    async def revoke_all_for_user(self, user_id: str) -> int:
        revoked = 0
        async with self._lock:
            for session in self._data.values():
                if session.user_id == user_id and not session.revoked:
                    session.revoked = True
                    revoked += 1
        return revoked


# =============================================================================
# Factory
# =============================================================================


def create_memory_storage() -> StorageProvider:
    """Create a StorageProvider backed by in-memory repositories."""
    permissions = InMemoryPermissionRepository()
    roles = InMemoryRoleRepository(permissions)
    return StorageProvider(
        users=InMemoryUserRepository(roles, permissions),
        roles=roles,
        permissions=permissions,
        identities=InMemoryExternalIdentityRepository(),
        sessions=InMemoryRefreshSessionRepository(),
    )
