"""
Account flows: registration, login, token refresh, logout, email
verification, password reset, profile and OAuth login.

Login checks run in a fixed order so the error a caller sees never tells
them more than they could already prove:

1. password (wrong password and OAuth-only accounts -> INVALID_CREDENTIALS)
2. ban (ACCOUNT_BANNED)
3. email verification (EMAIL_NOT_VERIFIED, when required)

Password and federated logins end the same way: `issue_tokens`.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel

from authkit.auth.authorization import default_role_ids
from authkit.auth.federation import FederationAdapter
from authkit.auth.jwt import RefreshClaims, Subject, TokenPair, TokenService
from authkit.auth.passwords import PasswordHasher, check_password_policy
from authkit.config import Settings
from authkit.core.errors import (
    AuthenticationError,
    AuthErrorCode,
    AuthKitError,
    NotFoundError,
    TokenInvalidError,
)
from authkit.core.models import User, UserProfile
from authkit.core.utils import generate_username, normalize_email, utc_now
from authkit.integrations.email import EmailService
from authkit.integrations.oauth import OAuthManager
from authkit.services.users import insert_user
from authkit.storage.base import StorageProvider

logger = logging.getLogger(__name__)


def password_version(user: User) -> str:
    """Changes with every password change; reset links carry it."""
    return (user.password_changed_at or user.created_at).isoformat()


class RegisterResult(BaseModel):
    user: UserProfile
    email_sent: bool


class AuthService:
    """Account lifecycle for end users."""

    def __init__(
        self,
        settings: Settings,
        storage: StorageProvider,
        tokens: TokenService,
        hasher: PasswordHasher,
        email: EmailService,
        federation: FederationAdapter,
        oauth: OAuthManager,
    ):
        self.settings = settings
        self.storage = storage
        self.tokens = tokens
        self.hasher = hasher
        self.email = email
        self.federation = federation
        self.oauth = oauth
        self._dummy_hash: str | None = None

    # =========================================================================
    # Registration & verification
    # =========================================================================

    async def register(
        self,
        email: str,
        password: str,
        username: str | None = None,
        full_name: str | None = None,
        phone_number: str | None = None,
    ) -> RegisterResult:
        """
        Create an unverified account and send the verification email.

        A failed email doesn't undo the registration; it shows up as
        `email_sent=False` and the user can ask for a resend.
        """
        check_password_policy(password, self.settings.password_min_length)
        email = normalize_email(email)
        role_ids = await default_role_ids(self.storage.roles, self.settings.default_role_name)

        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        user = await insert_user(
            self.storage.users,
            User(
                email=email,
                username=username or generate_username(email),
                full_name=full_name,
                phone_number=phone_number or None,
                role_ids=role_ids,
            ),
            password_hash,
            generated_username=not username,
        )
        logger.info(f"Registered user {user.id}")

        email_sent = await self._send_verification(user)
        return RegisterResult(user=await self.get_me(user.id), email_sent=email_sent)

    async def _send_verification(self, user: User) -> bool:
        token = self.tokens.create_email_token(user.id)
        return await self.email.send_verification(user.email, user.full_name or user.username, token)

    async def verify_email(self, token: str) -> UserProfile:
        """Mark the token's user verified. Verifying twice is a no-op."""
        user_id = self.tokens.decode_email_token(token)
        user = await self.storage.users.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", code=AuthErrorCode.USER_NOT_FOUND)
        if not user.is_verified:
            await self.storage.users.update(user.id, is_verified=True)
            logger.info(f"Verified email for user {user.id}")
        return await self.get_me(user.id)

    async def resend_verification(self, email: str) -> None:
        """Send a fresh link if the account exists and is unverified. Silent either way."""
        user = await self.storage.users.find_by_email(email)
        if user is None or user.is_verified or user.is_banned:
            return
        await self._send_verification(user)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def login(self, email: str, password: str) -> TokenPair:
        """
        Exchange email and password for a token pair.

        Raises:
            AuthenticationError: INVALID_CREDENTIALS, ACCOUNT_BANNED or
                EMAIL_NOT_VERIFIED, checked in that order
        """
        credential = await self.storage.users.find_by_email_with_credential(email)

        if credential is None or not credential.password_hash:
            # Burn the same hashing time an existing account would
            await asyncio.to_thread(self.hasher.verify, password, await self._get_dummy_hash())
            raise _invalid_credentials()

        ok = await asyncio.to_thread(self.hasher.verify, password, credential.password_hash)
        if not ok:
            raise _invalid_credentials()

        user = credential.user
        if user.is_banned:
            raise AuthenticationError("Account is banned", code=AuthErrorCode.ACCOUNT_BANNED)
        if self.settings.require_verified_email and not user.is_verified:
            raise AuthenticationError("Email not verified", code=AuthErrorCode.EMAIL_NOT_VERIFIED)

        if self.hasher.needs_rehash(credential.password_hash):
            upgraded = await asyncio.to_thread(self.hasher.hash, password)
            await self.storage.users.set_password(
                user.id, upgraded, user.password_changed_at or user.created_at
            )
            logger.info(f"Upgraded password hash cost for user {user.id}")

        logger.info(f"User {user.id} logged in")
        return await self.issue_tokens(user)

    async def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(self.hasher.hash, "not-a-real-password")
        return self._dummy_hash

    async def issue_tokens(self, user: User) -> TokenPair:
        return await self.tokens.issue(Subject(user_id=user.id, role_ids=user.role_ids))

    async def refresh(self, refresh_token: str | None) -> TokenPair:
        """
        Rotate a refresh token.

        The new access token carries the user's current roles, so this is
        how a role change reaches a signed-in user.
        """
        if not refresh_token:
            raise AuthenticationError("Refresh token missing", code=AuthErrorCode.REFRESH_TOKEN_MISSING)
        return await self.tokens.refresh(refresh_token, self._load_subject)

    async def _load_subject(self, claims: RefreshClaims) -> Subject:
        user = await self.storage.users.find_by_id(claims.sub)
        if user is None:
            raise TokenInvalidError()
        if user.is_banned:
            await self.tokens.revoke_all(user.id)
            raise AuthenticationError("Account is banned", code=AuthErrorCode.ACCOUNT_BANNED)
        if user.password_changed_at and claims.iat.timestamp() < int(user.password_changed_at.timestamp()):
            await self.storage.sessions.revoke(claims.fam)
            raise TokenInvalidError()
        return Subject(user_id=user.id, role_ids=user.role_ids)

    async def logout(self, refresh_token: str | None) -> None:
        if not refresh_token:
            raise AuthenticationError("Refresh token missing", code=AuthErrorCode.REFRESH_TOKEN_MISSING)
        await self.tokens.revoke(refresh_token)

    # =========================================================================
    # Password reset
    # =========================================================================

    async def forgot_password(self, email: str) -> None:
        """Email a reset link if the account exists. Never says whether it does."""
        user = await self.storage.users.find_by_email(email)
        if user is None or user.is_banned:
            logger.info("Password reset requested for unknown or banned account")
            return
        token = self.tokens.create_reset_token(user.id, password_version(user))
        await self.email.send_password_reset(user.email, token)

    async def reset_password(self, token: str, new_password: str) -> None:
        """
        Set a new password from a reset token.

        Every refresh chain of the user is revoked, and the token stops
        working once the password has changed.
        """
        check_password_policy(new_password, self.settings.password_min_length)
        payload = self.tokens.decode_reset_token(token)

        user = await self.storage.users.find_by_id(payload["sub"])
        if user is None:
            raise TokenInvalidError()
        if payload.get("pwv") != password_version(user):
            logger.info(f"Stale reset token for user {user.id}")
            raise TokenInvalidError()

        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        updated = await self.storage.users.set_password(user.id, password_hash, utc_now())
        if updated is None:
            raise AuthKitError("Password reset failed", code=AuthErrorCode.PASSWORD_RESET_FAILED)

        revoked = await self.tokens.revoke_all(user.id)
        logger.info(f"Password reset for user {user.id}; revoked {revoked} session(s)")

    # =========================================================================
    # Profile
    # =========================================================================

    async def get_me(self, user_id: str) -> UserProfile:
        resolved = await self.storage.users.find_by_id_with_roles_and_permissions(user_id)
        if resolved is None:
            raise NotFoundError("User not found", code=AuthErrorCode.USER_NOT_FOUND)
        identities = await self.storage.identities.list_for_user(user_id)
        return UserProfile.build(resolved, [i.provider for i in identities])

    # =========================================================================
    # OAuth
    # =========================================================================

    async def login_with_provider(
        self,
        provider: str,
        *,
        code: str | None = None,
        token: str | None = None,
    ) -> TokenPair:
        """
        Log in through an external provider.

        Either an authorization `code` (server-side flow) or a provider
        `token` (client SDK flow) must be given.
        """
        if code:
            info = await self.oauth.authenticate(provider, code)
        elif token:
            info = await self.oauth.verify_token(provider, token)
        else:
            raise AuthKitError("Missing authorization code or token", code=AuthErrorCode.OAUTH_INVALID_TOKEN)

        user = await self.federation.resolve_user(info)
        if user.is_banned:
            raise AuthenticationError("Account is banned", code=AuthErrorCode.ACCOUNT_BANNED)

        logger.info(f"User {user.id} logged in via {provider}")
        return await self.issue_tokens(user)


def _invalid_credentials() -> AuthenticationError:
    return AuthenticationError("Invalid email or password", code=AuthErrorCode.INVALID_CREDENTIALS)
