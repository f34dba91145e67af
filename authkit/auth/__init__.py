"""
Authentication & authorization core.

- passwords:      one-way hashing and verification
- jwt:            access/refresh tokens with rotation and reuse detection
- authorization:  role -> permission decisions, fail-closed
- admin_role:     cached admin-role id with single-flight refresh
- context:        explicit per-request AuthContext
- policies:       guard chain and per-route Protect declarations
- federation:     external identity -> local user
"""

from authkit.auth.admin_role import AdminRoleCache
from authkit.auth.authorization import (
    Authorizer,
    PermissionRequirement,
    Requirement,
    RoleRequirement,
)
from authkit.auth.context import AuthContext
from authkit.auth.federation import FederationAdapter
from authkit.auth.jwt import AccessClaims, RefreshClaims, Subject, TokenPair, TokenService
from authkit.auth.passwords import PasswordHasher, hash_password, verify_password
from authkit.auth.policies import (
    GuardChain,
    GuardFactory,
    GuardRequest,
    Protect,
    guarded,
    require_admin,
    require_auth,
    require_permission,
    require_role,
)

__all__ = [
    # Credentials
    "PasswordHasher",
    "hash_password",
    "verify_password",
    # Tokens
    "TokenService",
    "TokenPair",
    "Subject",
    "AccessClaims",
    "RefreshClaims",
    # Authorization
    "Authorizer",
    "AdminRoleCache",
    "Requirement",
    "RoleRequirement",
    "PermissionRequirement",
    # Guards
    "AuthContext",
    "GuardChain",
    "GuardFactory",
    "GuardRequest",
    "Protect",
    "guarded",
    "require_auth",
    "require_permission",
    "require_role",
    "require_admin",
    # Federation
    "FederationAdapter",
]
