"""
Auth context - the "who is calling" for each request.

This is the explicit value the guard chain builds and hands to route
handlers and services. Nothing about the caller lives in ambient state,
so authorization logic can be exercised without a web framework.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from authkit.auth.jwt import AccessClaims


@dataclass(frozen=True)
class AuthContext:
    """
    Authorization context for a request.

    Usage in routes:
        async def my_route(ctx: AuthContext = Depends(guarded(Protect(permissions=("posts:write",))))):
            print(f"User {ctx.user_id} holds roles {ctx.role_ids}")
    """

    # Who
    user_id: str | None = None
    role_ids: frozenset[str] = frozenset()

    # Token the identity came from
    token_id: str | None = None
    expires_at: datetime | None = None

    # Set once the authorize step has passed
    authorized: bool = False

    # Extra context
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_authenticated(self) -> bool:
        """Is there a verified caller?"""
        return self.user_id is not None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @property
    def state(self) -> str:
        """Unauthenticated -> Authenticated -> Authorized."""
        if self.is_anonymous:
            return "unauthenticated"
        return "authorized" if self.authorized else "authenticated"

    def with_authorization(self) -> AuthContext:
        return replace(self, authorized=True)

    @classmethod
    def anonymous(cls) -> AuthContext:
        """Create an anonymous context (no user)."""
        return cls()

    @classmethod
    def from_claims(cls, claims: AccessClaims) -> AuthContext:
        """Build the context from a verified access token."""
        return cls(
            user_id=claims.sub,
            role_ids=frozenset(claims.roles),
            token_id=claims.jti,
            expires_at=claims.exp,
        )
