"""
Application state - every collaborator, wired once per app.

Routes reach it through `get_kit`, which reads `request.app.state.kit`.
Nothing is module-global, so tests can build as many independent apps as
they like.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from authkit.auth.admin_role import AdminRoleCache
from authkit.auth.authorization import Authorizer
from authkit.auth.federation import FederationAdapter
from authkit.auth.jwt import TokenService
from authkit.auth.passwords import PasswordHasher
from authkit.auth.policies import GuardFactory
from authkit.config import Settings
from authkit.integrations.email import EmailService, LoggingMailService, MailService
from authkit.integrations.oauth import OAuthManager
from authkit.services.auth import AuthService
from authkit.services.permissions import PermissionService
from authkit.services.roles import RoleService
from authkit.services.seed import SeedService
from authkit.services.users import UserAdminService
from authkit.storage.base import StorageProvider


@dataclass
class AppState:
    """Application state - initialized when the app is created."""

    settings: Settings
    storage: StorageProvider
    tokens: TokenService
    admin_roles: AdminRoleCache
    authorizer: Authorizer
    guards: GuardFactory
    oauth: OAuthManager
    auth: AuthService
    roles: RoleService
    permissions: PermissionService
    users: UserAdminService
    seed: SeedService


def build_state(
    settings: Settings,
    storage: StorageProvider,
    mail: MailService | None = None,
    oauth: OAuthManager | None = None,
) -> AppState:
    hasher = PasswordHasher(settings.password_hash_iterations)
    tokens = TokenService(settings, storage.sessions)
    admin_roles = AdminRoleCache(
        storage.roles,
        role_name=settings.admin_role_name,
        role_id=settings.admin_role_id or None,
        ttl_seconds=settings.admin_role_cache_ttl_seconds,
    )
    authorizer = Authorizer(
        storage.roles,
        storage.permissions,
        admin_roles,
        ttl_seconds=settings.role_permission_cache_ttl_seconds,
    )
    oauth = oauth or OAuthManager(settings)
    federation = FederationAdapter(
        storage.users,
        storage.identities,
        storage.roles,
        default_role_name=settings.default_role_name,
    )
    email = EmailService(settings, mail or LoggingMailService())

    return AppState(
        settings=settings,
        storage=storage,
        tokens=tokens,
        admin_roles=admin_roles,
        authorizer=authorizer,
        guards=GuardFactory(tokens, authorizer),
        oauth=oauth,
        auth=AuthService(settings, storage, tokens, hasher, email, federation, oauth),
        roles=RoleService(storage, authorizer, admin_roles),
        permissions=PermissionService(storage, authorizer),
        users=UserAdminService(settings, storage, tokens, hasher),
        seed=SeedService(settings, storage, admin_roles),
    )


def get_kit(request: Request) -> AppState:
    return request.app.state.kit
