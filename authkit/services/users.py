"""
User administration.

Admins can create pre-verified accounts, list and inspect users, soft-ban
them and replace their role set. Users are never hard-deleted; banning is
the off switch, and it also revokes every refresh chain the user holds.
"""

from __future__ import annotations

import asyncio
import logging

from authkit.auth.jwt import TokenService
from authkit.auth.passwords import PasswordHasher, check_password_policy
from authkit.config import Settings
from authkit.core.errors import (
    AuthErrorCode,
    ConflictError,
    DuplicateKeyError,
    NotFoundError,
    conflict_from_duplicate,
)
from authkit.core.models import User, UserFilter, UserProfile
from authkit.core.utils import generate_username, normalize_email
from authkit.storage.base import RoleRepository, StorageProvider, UserRepository

logger = logging.getLogger(__name__)

USERNAME_ATTEMPTS = 5


async def insert_user(
    users: UserRepository,
    candidate: User,
    password_hash: str | None,
    generated_username: bool,
) -> User:
    """
    Create a user, translating uniqueness violations to domain codes.

    A generated username that collides is retried with a random suffix;
    an explicitly chosen one is reported as USERNAME_EXISTS.
    """
    for attempt in range(USERNAME_ATTEMPTS if generated_username else 1):
        if attempt:
            candidate = candidate.model_copy(
                update={"username": generate_username(candidate.email, with_suffix=True)}
            )
        try:
            return await users.create(candidate, password_hash=password_hash)
        except DuplicateKeyError as e:
            if e.field == "username" and generated_username:
                continue
            raise conflict_from_duplicate(e)
    raise ConflictError("Could not allocate a username", code=AuthErrorCode.USERNAME_EXISTS)


async def require_roles(roles: RoleRepository, role_ids: list[str]) -> list[str]:
    """Every id must name an existing role. Returns the ids de-duplicated."""
    wanted = list(dict.fromkeys(role_ids))
    found = {r.id for r in await roles.find_by_ids(wanted)}
    missing = [r for r in wanted if r not in found]
    if missing:
        raise NotFoundError(
            "Role not found",
            code=AuthErrorCode.ROLE_NOT_FOUND,
            details={"role_ids": missing},
        )
    return wanted


class UserAdminService:
    """Administrative operations on user accounts."""

    def __init__(
        self,
        settings: Settings,
        storage: StorageProvider,
        tokens: TokenService,
        hasher: PasswordHasher,
    ):
        self.settings = settings
        self.storage = storage
        self.tokens = tokens
        self.hasher = hasher

    async def create(
        self,
        email: str,
        password: str,
        username: str | None = None,
        full_name: str | None = None,
        phone_number: str | None = None,
        role_ids: list[str] | None = None,
    ) -> UserProfile:
        """Create an account that skips email verification."""
        check_password_policy(password, self.settings.password_min_length)
        role_ids = await require_roles(self.storage.roles, role_ids or [])
        email = normalize_email(email)

        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        user = await insert_user(
            self.storage.users,
            User(
                email=email,
                username=username or generate_username(email),
                full_name=full_name,
                phone_number=phone_number,
                role_ids=role_ids,
                is_verified=True,
            ),
            password_hash,
            generated_username=not username,
        )
        logger.info(f"Admin created user {user.id}")
        return await self.get(user.id)

    async def list(self, filters: UserFilter | None = None) -> list[UserProfile]:
        resolved = await self.storage.users.list(filters)
        return [UserProfile.build(u) for u in resolved]

    async def get(self, user_id: str) -> UserProfile:
        resolved = await self.storage.users.find_by_id_with_roles_and_permissions(user_id)
        if resolved is None:
            raise NotFoundError("User not found", code=AuthErrorCode.USER_NOT_FOUND)
        identities = await self.storage.identities.list_for_user(user_id)
        return UserProfile.build(resolved, [i.provider for i in identities])

    async def set_ban(self, user_id: str, banned: bool) -> UserProfile:
        user = await self.storage.users.update(user_id, is_banned=banned)
        if user is None:
            raise NotFoundError("User not found", code=AuthErrorCode.USER_NOT_FOUND)
        if banned:
            revoked = await self.tokens.revoke_all(user_id)
            logger.info(f"Banned user {user_id}; revoked {revoked} session(s)")
        else:
            logger.info(f"Unbanned user {user_id}")
        return await self.get(user_id)

    async def update_roles(self, user_id: str, role_ids: list[str]) -> UserProfile:
        """
        Replace the user's role set.

        Takes effect on the user's next login or refresh; access tokens
        already issued keep the role ids they were minted with.
        """
        role_ids = await require_roles(self.storage.roles, role_ids)
        user = await self.storage.users.update(user_id, role_ids=role_ids)
        if user is None:
            raise NotFoundError("User not found", code=AuthErrorCode.USER_NOT_FOUND)
        logger.info(f"Set roles of user {user_id} to {role_ids}")
        return await self.get(user_id)
