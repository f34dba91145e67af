"""
Guards - per-request enforcement.

Each protected endpoint declares, as plain data (`Protect`), what it needs.
At route-registration time that declaration is compiled into a
`GuardChain`: an ordered list of guard callables run one after the other,
short-circuiting on the first failure.

    Unauthenticated -> Authenticated -> Authorized | Forbidden

Failure codes are distinct and stable:
- no / malformed Authorization header  -> UNAUTHORIZED (401)
- token presented but bad or expired   -> INVALID_TOKEN / TOKEN_EXPIRED (401)
- authenticated but not permitted      -> ACCESS_DENIED (403)

Usage:
    @router.get("/posts")
    async def list_posts(ctx: AuthContext = Depends(require_permission("posts:read"))):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from fastapi import Request

from authkit.auth.authorization import Authorizer
from authkit.auth.context import AuthContext
from authkit.auth.jwt import TokenService
from authkit.core.errors import AuthenticationError, AuthorizationError


# =============================================================================
# Guards
# =============================================================================


@dataclass(frozen=True)
class GuardRequest:
    """The slice of an inbound request the guards look at."""
    authorization: str | None = None
    path: str | None = None


Guard = Callable[[GuardRequest, AuthContext], Awaitable[AuthContext]]


def extract_bearer(header: str | None) -> str:
    """Pull the token out of `Authorization: Bearer <token>`."""
    if not header:
        raise AuthenticationError("Missing or invalid Authorization header")
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise AuthenticationError("Missing or invalid Authorization header")
    return token


class Authenticate:
    """Verify the bearer access token and attach the subject."""

    def __init__(self, tokens: TokenService):
        self.tokens = tokens

    async def __call__(self, request: GuardRequest, ctx: AuthContext) -> AuthContext:
        token = extract_bearer(request.authorization)
        claims = self.tokens.verify_access(token)
        return AuthContext.from_claims(claims)


class RequirePermission:
    def __init__(self, authorizer: Authorizer, name: str):
        self.authorizer = authorizer
        self.name = name

    async def __call__(self, request: GuardRequest, ctx: AuthContext) -> AuthContext:
        _ensure_authenticated(ctx)
        if not await self.authorizer.has_permission(ctx.role_ids, self.name):
            raise AuthorizationError("Forbidden: insufficient permissions")
        return ctx.with_authorization()


class RequireRole:
    def __init__(self, authorizer: Authorizer, role_id: str):
        self.authorizer = authorizer
        self.role_id = role_id

    async def __call__(self, request: GuardRequest, ctx: AuthContext) -> AuthContext:
        _ensure_authenticated(ctx)
        if not await self.authorizer.has_role(ctx.role_ids, self.role_id):
            raise AuthorizationError("Forbidden: role required")
        return ctx.with_authorization()


class RequireAdmin:
    def __init__(self, authorizer: Authorizer):
        self.authorizer = authorizer

    async def __call__(self, request: GuardRequest, ctx: AuthContext) -> AuthContext:
        _ensure_authenticated(ctx)
        if not await self.authorizer.is_admin(ctx.role_ids):
            raise AuthorizationError("Forbidden: admin required")
        return ctx.with_authorization()


def _ensure_authenticated(ctx: AuthContext) -> None:
    # Authorization guards placed before Authenticate must still deny
    if ctx.is_anonymous:
        raise AuthenticationError()


class GuardChain:
    """Runs guards in order; the first exception stops the chain."""

    def __init__(self, guards: Sequence[Guard]):
        self.guards = tuple(guards)

    async def run(self, request: GuardRequest, ctx: AuthContext | None = None) -> AuthContext:
        ctx = ctx or AuthContext.anonymous()
        for guard in self.guards:
            ctx = await guard(request, ctx)
        return ctx


# =============================================================================
# Declarations
# =============================================================================


@dataclass(frozen=True)
class Protect:
    """
    What a route requires, as plain data.

    Protect()                                  # any authenticated caller
    Protect(permissions=("posts:write",))      # every listed permission
    Protect(roles=("role_ab12",))              # every listed role id
    Protect(admin=True)                        # the configured admin role
    """

    authenticate: bool = True
    admin: bool = False
    roles: tuple[str, ...] = ()
    permissions: tuple[str, ...] = ()


class GuardFactory:
    """Compiles `Protect` declarations into guard chains."""

    def __init__(self, tokens: TokenService, authorizer: Authorizer):
        self.tokens = tokens
        self.authorizer = authorizer
        self._chains: dict[Protect, GuardChain] = {}

    def chain(self, protect: Protect) -> GuardChain:
        if protect not in self._chains:
            guards: list[Guard] = []
            if protect.authenticate or protect.admin or protect.roles or protect.permissions:
                guards.append(Authenticate(self.tokens))
            if protect.admin:
                guards.append(RequireAdmin(self.authorizer))
            guards.extend(RequireRole(self.authorizer, r) for r in protect.roles)
            guards.extend(RequirePermission(self.authorizer, p) for p in protect.permissions)
            self._chains[protect] = GuardChain(guards)
        return self._chains[protect]


# =============================================================================
# FastAPI adapter
# =============================================================================


def guarded(protect: Protect) -> Callable[[Request], Awaitable[AuthContext]]:
    """
    FastAPI dependency running the chain for `protect`.

    The factory is looked up on `app.state.kit` at request time, so the
    declaration can be made at import time.
    """

    async def dependency(request: Request) -> AuthContext:
        factory: GuardFactory = request.app.state.kit.guards
        return await factory.chain(protect).run(
            GuardRequest(
                authorization=request.headers.get("authorization"),
                path=request.url.path,
            )
        )

    return dependency


def require_auth() -> Callable:
    """Just require authentication, no specific role or permission."""
    return guarded(Protect())


def require_permission(*names: str) -> Callable:
    return guarded(Protect(permissions=tuple(names)))


def require_role(*role_ids: str) -> Callable:
    return guarded(Protect(roles=tuple(role_ids)))


def require_admin() -> Callable:
    return guarded(Protect(admin=True))
