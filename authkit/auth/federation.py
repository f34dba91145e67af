"""
Federation - map a verified external identity onto one local user.

Resolution order for (provider, subject, email):

1. A linked ExternalIdentity exists -> its owner.
2. A local user has the same email -> link the identity to that user.
   Only when the provider vouches for the email; otherwise anyone able
   to set an unverified address at a provider could take the account.
3. Otherwise create a passwordless user and link the identity.

Nothing here takes an in-process lock. The store's unique constraints on
email and on (provider, subject) decide concurrent races, and the loser
re-reads whatever the winner wrote.
"""

from __future__ import annotations

import logging

from authkit.auth.authorization import default_role_ids
from authkit.core.errors import (
    AuthErrorCode,
    ConflictError,
    DuplicateKeyError,
    NotFoundError,
    conflict_from_duplicate,
)
from authkit.core.models import ExternalIdentity, User
from authkit.core.utils import generate_username, normalize_email
from authkit.integrations.oauth import OAuthUserInfo
from authkit.storage.base import ExternalIdentityRepository, RoleRepository, UserRepository

logger = logging.getLogger(__name__)


class FederationAdapter:
    """Finds or creates the local user behind a provider identity."""

    USERNAME_ATTEMPTS = 5

    def __init__(
        self,
        users: UserRepository,
        identities: ExternalIdentityRepository,
        roles: RoleRepository,
        default_role_name: str = "",
    ):
        self.users = users
        self.identities = identities
        self.roles = roles
        self.default_role_name = default_role_name

    async def resolve_user(self, info: OAuthUserInfo) -> User:
        """
        Return the local user for a verified provider identity.

        Raises:
            ConflictError: email belongs to a local account and the provider
                didn't verify it (EMAIL_EXISTS)
            NotFoundError: identity is linked to a user that no longer exists
        """
        owner = await self._owner_of(info)
        if owner is not None:
            return owner

        email = normalize_email(info.email)
        user = await self.users.find_by_email(email)
        if user is None:
            user = await self._create_user(info, email)
        else:
            owner = await self._claim_existing(info)
            if owner is not None:
                return owner

        return await self._link(user, info)

    async def _owner_of(self, info: OAuthUserInfo) -> User | None:
        identity = await self.identities.find(info.provider, info.provider_user_id)
        if identity is None:
            return None
        user = await self.users.find_by_id(identity.user_id)
        if user is None:
            logger.error(f"{info.provider} identity {identity.id} points at missing user {identity.user_id}")
            raise NotFoundError("User not found", code=AuthErrorCode.USER_NOT_FOUND)
        return user

    async def _claim_existing(self, info: OAuthUserInfo) -> User | None:
        """
        A user with this email exists. Returns the identity's owner when a
        concurrent login for the same identity already linked it; otherwise
        enforces the verified-email rule and returns None.
        """
        owner = await self._owner_of(info)
        if owner is None:
            self._check_linkable(info)
        return owner

    def _check_linkable(self, info: OAuthUserInfo) -> None:
        if not info.email_verified:
            logger.warning(
                f"Refusing to link unverified {info.provider} email to an existing account"
            )
            raise ConflictError(
                "An account with this email already exists",
                code=AuthErrorCode.EMAIL_EXISTS,
            )

    async def _create_user(self, info: OAuthUserInfo, email: str) -> User:
        role_ids = await default_role_ids(self.roles, self.default_role_name)

        for attempt in range(self.USERNAME_ATTEMPTS):
            candidate = User(
                email=email,
                username=generate_username(email, with_suffix=attempt > 0),
                full_name=info.name or None,
                role_ids=role_ids,
                is_verified=info.email_verified,
            )
            try:
                user = await self.users.create(candidate, password_hash=None)
            except DuplicateKeyError as e:
                if e.field == "username":
                    continue
                if e.field != "email":
                    raise conflict_from_duplicate(e)
                # Someone else created this email first; use their record
                existing = await self.users.find_by_email(email)
                if existing is None:
                    raise conflict_from_duplicate(e)
                return await self._claim_existing(info) or existing
            logger.info(f"Created user {user.id} from {info.provider} login")
            return user

        raise ConflictError(
            "Could not allocate a username",
            code=AuthErrorCode.USERNAME_EXISTS,
        )

    async def _link(self, user: User, info: OAuthUserInfo) -> User:
        identity = ExternalIdentity(
            provider=info.provider,
            subject=info.provider_user_id,
            user_id=user.id,
            email=normalize_email(info.email),
        )
        try:
            await self.identities.create(identity)
        except DuplicateKeyError as e:
            # A concurrent login linked it first
            owner = await self._owner_of(info)
            if owner is None:
                raise conflict_from_duplicate(e)
            return owner

        logger.info(f"Linked {info.provider} identity to user {user.id}")
        return user
