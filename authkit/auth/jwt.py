# =============================================================================
# Token Service
# =============================================================================
#
# Session lifecycle:
#
#   Issued -> Active -> (Refreshed -> Active)* -> Expired | Revoked
#
#   - Access tokens are stateless: subject id, role ids, expiry. Verifying
#     one never touches storage, so the role set inside is what every
#     authorization decision for that request uses. A role change shows up
#     only after the user refreshes or logs in again; callers that need a
#     role change to bite immediately must force a refresh.
#   - Refresh tokens carry a chain id (`fam`) and a rotation marker (`jti`).
#     The server keeps the one live marker per chain. Exchanging a refresh
#     token swaps the marker atomically; presenting a superseded marker is
#     treated as theft and revokes the chain (or every chain of the user,
#     see `refresh_reuse_scope`).
#   - Email verification and password reset use their own short-lived,
#     single-purpose tokens signed with their own secrets.
#
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import jwt
from pydantic import BaseModel, Field

from authkit.config import Settings
from authkit.core.errors import TokenExpiredError, TokenInvalidError, TokenReusedError
from authkit.core.models import RefreshSession
from authkit.core.utils import generate_id, generate_marker, utc_now
from authkit.storage.base import RefreshSessionRepository

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================


class Subject(BaseModel):
    """Who a token is issued to, as of issuance."""
    user_id: str
    role_ids: list[str] = Field(default_factory=list)


class TokenPair(BaseModel):
    """Access and refresh token pair."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until access token expires


class AccessClaims(BaseModel):
    """Validated access token payload."""
    sub: str
    roles: list[str] = Field(default_factory=list)
    exp: datetime
    iat: datetime
    jti: str


class RefreshClaims(BaseModel):
    """Validated refresh token payload."""
    sub: str
    fam: str  # rotation chain
    jti: str  # rotation marker
    exp: datetime
    iat: datetime


ACCESS = "access"
REFRESH = "refresh"
VERIFY_EMAIL = "verify"
RESET_PASSWORD = "reset"


# =============================================================================
# Service
# =============================================================================


class TokenService:
    """Issues, verifies and rotates signed tokens."""

    def __init__(
        self,
        settings: Settings,
        sessions: RefreshSessionRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.sessions = sessions
        self.clock = clock

    # -------------------------------------------------------------------------
    # Issuance
    # -------------------------------------------------------------------------

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.jwt_access_token_expire_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.jwt_refresh_token_expire_days)

    def create_access_token(self, subject: Subject) -> str:
        """Create a signed access token carrying the subject's role ids."""
        now = self.clock()
        payload = {
            "sub": subject.user_id,
            "roles": sorted(set(subject.role_ids)),
            "type": ACCESS,
            "iat": now,
            "exp": now + self.access_ttl,
            "jti": generate_id("tok"),
            "iss": self.settings.jwt_issuer,
        }
        return self._encode(payload, self.settings.jwt_secret_key)

    def _create_refresh_token(self, user_id: str, family_id: str, marker: str) -> tuple[str, datetime]:
        now = self.clock()
        expires_at = now + self.refresh_ttl
        payload = {
            "sub": user_id,
            "type": REFRESH,
            "fam": family_id,
            "jti": marker,
            "iat": now,
            "exp": expires_at,
            "iss": self.settings.jwt_issuer,
        }
        return self._encode(payload, self.settings.jwt_refresh_secret_key), expires_at

    def _pair(self, subject: Subject, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=self.create_access_token(subject),
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    async def issue(self, subject: Subject) -> TokenPair:
        """Start a new session: access token plus the first refresh token of a chain."""
        family_id = generate_id("fam")
        marker = generate_marker()
        refresh_token, expires_at = self._create_refresh_token(subject.user_id, family_id, marker)
        await self.sessions.create(
            RefreshSession(
                family_id=family_id,
                user_id=subject.user_id,
                marker=marker,
                expires_at=expires_at,
            )
        )
        return self._pair(subject, refresh_token)

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify_access(self, token: str) -> AccessClaims:
        """
        Check signature and expiry of an access token.

        Pure and stateless: storage is never consulted.

        Raises:
            TokenExpiredError: Token has expired
            TokenInvalidError: Token is invalid
        """
        payload = self._decode(token, self.settings.jwt_secret_key, ACCESS)
        roles = payload.get("roles", [])
        if not isinstance(roles, list):
            raise TokenInvalidError()
        return AccessClaims(
            sub=payload["sub"],
            roles=[str(r) for r in roles],
            exp=_from_timestamp(payload["exp"]),
            iat=_from_timestamp(payload["iat"]),
            jti=payload["jti"],
        )

    def decode_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, self.settings.jwt_refresh_secret_key, REFRESH)
        if not payload.get("fam"):
            raise TokenInvalidError()
        return RefreshClaims(
            sub=payload["sub"],
            fam=payload["fam"],
            jti=payload["jti"],
            exp=_from_timestamp(payload["exp"]),
            iat=_from_timestamp(payload["iat"]),
        )

    # -------------------------------------------------------------------------
    # Rotation
    # -------------------------------------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        load_subject: Callable[[RefreshClaims], Awaitable[Subject]],
    ) -> TokenPair:
        """
        Exchange a refresh token for a new pair, rotating the chain marker.

        `load_subject` re-reads the user (ban state, current roles) so the
        new access token reflects the present role set.

        Raises:
            TokenExpiredError: refresh token expired
            TokenInvalidError: bad signature, unknown or revoked chain
            TokenReusedError: marker already superseded (chain gets revoked)
        """
        claims = self.decode_refresh(refresh_token)

        session = await self.sessions.get(claims.fam)
        if session is None or session.user_id != claims.sub:
            raise TokenInvalidError()
        if session.marker != claims.jti:
            await self._handle_reuse(claims)
        if session.revoked:
            raise TokenInvalidError()

        new_marker = generate_marker()
        new_refresh, expires_at = self._create_refresh_token(claims.sub, claims.fam, new_marker)
        if not await self.sessions.rotate(claims.fam, claims.jti, new_marker, expires_at):
            # Lost a race against another exchange of the same token
            await self._handle_reuse(claims)

        subject = await load_subject(claims)
        return self._pair(subject, new_refresh)

    async def _handle_reuse(self, claims: RefreshClaims) -> None:
        if self.settings.refresh_reuse_scope == "all":
            revoked = await self.sessions.revoke_all_for_user(claims.sub)
        else:
            revoked = int(await self.sessions.revoke(claims.fam))
        logger.warning(
            f"Refresh token reuse detected for user {claims.sub}, "
            f"chain {claims.fam}; revoked {revoked} session(s)"
        )
        raise TokenReusedError()

    async def revoke(self, refresh_token: str) -> bool:
        """Revoke the chain a refresh token belongs to (logout)."""
        claims = self.decode_refresh(refresh_token)
        session = await self.sessions.get(claims.fam)
        if session is None or session.user_id != claims.sub:
            raise TokenInvalidError()
        return await self.sessions.revoke(claims.fam)

    async def revoke_all(self, user_id: str) -> int:
        """Revoke every chain of a user (password reset, forced re-login)."""
        return await self.sessions.revoke_all_for_user(user_id)

    # -------------------------------------------------------------------------
    # Single-purpose tokens
    # -------------------------------------------------------------------------

    def create_email_token(self, user_id: str) -> str:
        return self._purpose_token(
            user_id,
            VERIFY_EMAIL,
            self.settings.jwt_email_secret_key,
            timedelta(hours=self.settings.jwt_email_token_expire_hours),
        )

    def decode_email_token(self, token: str) -> str:
        """Return the user id from an email verification token."""
        return self._decode(token, self.settings.jwt_email_secret_key, VERIFY_EMAIL)["sub"]

    def create_reset_token(self, user_id: str, password_version: str = "") -> str:
        """`password_version` is echoed back as `pwv` so the link dies with the password."""
        return self._purpose_token(
            user_id,
            RESET_PASSWORD,
            self.settings.jwt_reset_secret_key,
            timedelta(minutes=self.settings.jwt_reset_token_expire_minutes),
            pwv=password_version,
        )

    def decode_reset_token(self, token: str) -> dict:
        """Return the full reset payload, `pwv` included."""
        return self._decode(token, self.settings.jwt_reset_secret_key, RESET_PASSWORD)

    def _purpose_token(self, user_id: str, purpose: str, secret: str, ttl: timedelta, **extra) -> str:
        now = self.clock()
        payload = {
            "sub": user_id,
            "type": purpose,
            "iat": now,
            "exp": now + ttl,
            "jti": generate_id("ptok"),
            "iss": self.settings.jwt_issuer,
            **extra,
        }
        return self._encode(payload, secret)

    # -------------------------------------------------------------------------
    # Encoding
    # -------------------------------------------------------------------------

    def _encode(self, payload: dict, secret: str) -> str:
        return jwt.encode(payload, secret, algorithm=self.settings.jwt_algorithm)

    def _decode(self, token: str, secret: str, expected_type: str) -> dict:
        """
        Decode and validate a JWT.

        Failures collapse to expired/invalid; the reason is only logged.
        """
        if not token or not isinstance(token, str):
            raise TokenInvalidError()
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.settings.jwt_algorithm],
                issuer=self.settings.jwt_issuer,
                leeway=self.settings.jwt_leeway_seconds,
                options={"require": ["exp", "iat", "sub", "jti", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError()
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected {expected_type} token: {e}")
            raise TokenInvalidError()

        if payload.get("type") != expected_type:
            raise TokenInvalidError()
        return payload


def _from_timestamp(value: int | float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)
