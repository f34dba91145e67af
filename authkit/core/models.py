"""
Core data models for authkit.

These models represent the fundamental entities: Users, Roles, Permissions,
linked external identities and refresh-token sessions. Roles reference
permissions by id and users reference roles by id; nothing is embedded by
value, so a rename never requires rewriting the referencing records.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from authkit.core.utils import generate_id, utc_now


# =============================================================================
# Permissions & Roles
# =============================================================================


class Permission(BaseModel):
    """A named capability, by convention `resource:action`."""

    id: str = Field(default_factory=lambda: generate_id("perm"))
    name: str
    description: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Role(BaseModel):
    """A named set of permission ids."""

    id: str = Field(default_factory=lambda: generate_id("role"))
    name: str
    description: str | None = None
    permission_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class RoleWithPermissions(BaseModel):
    """A role with its permissions resolved (one level of population)."""

    id: str
    name: str
    description: str | None = None
    permissions: list[Permission] = Field(default_factory=list)

    @property
    def permission_names(self) -> set[str]:
        return {p.name for p in self.permissions}


# =============================================================================
# Users
# =============================================================================


class User(BaseModel):
    """
    A local user record.

    Deliberately has no password field: read paths can't leak the hash.
    The credential is only reachable through `UserCredential`.
    """

    id: str = Field(default_factory=lambda: generate_id("user"))
    email: str
    username: str
    phone_number: str | None = None
    full_name: str | None = None
    role_ids: list[str] = Field(default_factory=list)
    is_verified: bool = False
    is_banned: bool = False
    password_changed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class UserCredential(BaseModel):
    """A user plus the stored password hash (None for OAuth-only accounts)."""

    user: User
    password_hash: str | None = None


class UserWithRoles(BaseModel):
    """A user with roles resolved and each role's permissions resolved."""

    user: User
    roles: list[RoleWithPermissions] = Field(default_factory=list)

    @property
    def role_ids(self) -> list[str]:
        return [r.id for r in self.roles]

    @property
    def permission_names(self) -> list[str]:
        names: set[str] = set()
        for role in self.roles:
            names.update(role.permission_names)
        return sorted(names)


class UserFilter(BaseModel):
    """Exact-match filters for listing users."""

    email: str | None = None
    username: str | None = None
    limit: int = 100
    offset: int = 0


# =============================================================================
# Federation & Sessions
# =============================================================================


class ExternalIdentity(BaseModel):
    """
    A provider-asserted identity linked to a local user.

    (provider, subject) is globally unique.
    """

    id: str = Field(default_factory=lambda: generate_id("ext"))
    provider: str
    subject: str
    user_id: str
    email: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class RefreshSession(BaseModel):
    """
    Server-side state of one refresh-token rotation chain.

    `marker` is the rotation marker of the only refresh token in the chain
    that may still be exchanged.
    """

    family_id: str
    user_id: str
    marker: str
    revoked: bool = False
    expires_at: datetime
    created_at: datetime = Field(default_factory=utc_now)
    rotated_at: datetime | None = None


# =============================================================================
# Views
# =============================================================================


class RoleSummary(BaseModel):
    id: str
    name: str


class UserProfile(BaseModel):
    """What a user (or an admin) gets to see. Never carries the password hash."""

    id: str
    email: str
    username: str
    full_name: str | None = None
    phone_number: str | None = None
    is_verified: bool
    is_banned: bool
    roles: list[RoleSummary] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    providers: list[str] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def build(cls, resolved: UserWithRoles, providers: list[str] | None = None) -> UserProfile:
        user = resolved.user
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            full_name=user.full_name,
            phone_number=user.phone_number,
            is_verified=user.is_verified,
            is_banned=user.is_banned,
            roles=[RoleSummary(id=r.id, name=r.name) for r in resolved.roles],
            permissions=resolved.permission_names,
            providers=sorted(set(providers or [])),
            created_at=user.created_at,
        )
