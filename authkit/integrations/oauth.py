# =============================================================================
# OAuth Integration (Google, Microsoft, Facebook)
# =============================================================================
#
# Each provider is registered only when its credentials are configured; a
# missing client id/secret silently leaves the provider out.
#
# Setup (Google):
#   1. Go to https://console.cloud.google.com/apis/credentials
#   2. Create OAuth 2.0 Client ID (Web application)
#   3. Set env vars:
#      - GOOGLE_OAUTH_CLIENT_ID=...
#      - GOOGLE_OAUTH_CLIENT_SECRET=...
#      - GOOGLE_OAUTH_REDIRECT_URI=postmessage   (popup/code-client flow)
#
# Setup (Microsoft):
#   1. Register an app at https://portal.azure.com (Entra ID)
#   2. Set env vars:
#      - MICROSOFT_OAUTH_CLIENT_ID=...
#      - MICROSOFT_OAUTH_CLIENT_SECRET=...
#      - MICROSOFT_OAUTH_REDIRECT_URI=https://yourdomain.com/auth/microsoft/callback
#      - MICROSOFT_OAUTH_TENANT=common
#
# Setup (Facebook):
#   1. Go to https://developers.facebook.com/apps
#   2. Create app, add Facebook Login product
#   3. Set env vars:
#      - FACEBOOK_OAUTH_CLIENT_ID=...
#      - FACEBOOK_OAUTH_CLIENT_SECRET=...
#      - FACEBOOK_OAUTH_REDIRECT_URI=https://yourdomain.com/auth/facebook/callback
#
# Two entry points per provider:
#   - authenticate(code)   server-side authorization-code exchange
#   - verify_token(token)  client-side SDK hands us an ID/access token
# Both end in a verified OAuthUserInfo or an OAuthError.
#
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt
from pydantic import BaseModel

from authkit.config import Settings
from authkit.core.errors import AuthErrorCode, OAuthError
from authkit.core.utils import generate_id

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================

class OAuthUserInfo(BaseModel):
    """User info retrieved from OAuth provider."""
    provider: str  # "google", "microsoft", "facebook"
    provider_user_id: str
    email: str
    name: str
    picture_url: str | None = None
    email_verified: bool = True


# =============================================================================
# HTTP
# =============================================================================

class OAuthHttpClient:
    """
    httpx wrapper shared by the providers.

    A provider rejecting what we sent (4xx) means the user's token or code
    is bad. Anything else (timeouts, connection errors, 5xx) is the
    provider failing and carries the provider-specific code.
    """

    def __init__(
        self,
        provider: str,
        failure_code: AuthErrorCode,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider
        self.failure_code = failure_code
        self.timeout = timeout
        self.transport = transport

    async def get(self, url: str, params: dict[str, Any] | None = None, headers: dict[str, str] | None = None) -> dict:
        return await self._request("GET", url, params=params, headers=headers)

    async def post(self, url: str, data: dict[str, Any] | None = None) -> dict:
        return await self._request("POST", url, data=data)

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"{self.provider} API timeout: {method} {url}")
            raise OAuthError("Authentication service timeout", code=self.failure_code)
        except httpx.HTTPError as e:
            logger.error(f"{self.provider} HTTP error: {method} {url} - {e}")
            raise OAuthError(f"{self.provider.title()} authentication failed", code=self.failure_code)

        if response.status_code >= 500:
            logger.error(f"{self.provider} returned {response.status_code}: {method} {url}")
            raise OAuthError(f"{self.provider.title()} authentication failed", code=self.failure_code)
        if response.status_code >= 400:
            logger.info(f"{self.provider} rejected request ({response.status_code}): {method} {url}")
            raise OAuthError(f"Invalid {self.provider.title()} credentials")

        try:
            return response.json()
        except ValueError:
            logger.error(f"{self.provider} returned a non-JSON body: {method} {url}")
            raise OAuthError(f"{self.provider.title()} authentication failed", code=self.failure_code)


def _require(value: Any, field: str, provider: str) -> Any:
    if not value:
        raise OAuthError(f"{field} not provided by {provider.title()}")
    return value


# =============================================================================
# Provider base
# =============================================================================

class OAuthProvider(ABC):
    """Common shape of a provider strategy."""

    name: str = ""
    failure_code: AuthErrorCode = AuthErrorCode.OAUTH_INVALID_TOKEN
    AUTHORIZE_URL: str = ""
    SCOPE: str = ""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.http = OAuthHttpClient(
            self.name,
            self.failure_code,
            timeout=settings.oauth_http_timeout_seconds,
            transport=transport,
        )

    @property
    def client_id(self) -> str:
        return getattr(self.settings, f"{self.name}_oauth_client_id")

    @property
    def client_secret(self) -> str:
        return getattr(self.settings, f"{self.name}_oauth_client_secret")

    @property
    def redirect_uri(self) -> str:
        configured = getattr(self.settings, f"{self.name}_oauth_redirect_uri")
        if configured:
            return configured
        base = self.settings.frontend_url.rstrip("/")
        return f"{base}/auth/{self.name}/callback"

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def get_authorize_url(self, state: str | None = None) -> str:
        """
        Get URL to redirect user to for sign-in.

        Args:
            state: Optional state parameter for CSRF protection
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.SCOPE,
        }
        params.update(self._extra_authorize_params())
        if state:
            params["state"] = state
        return f"{self.AUTHORIZE_URL}?{urlencode(params)}"

    def _extra_authorize_params(self) -> dict[str, str]:
        return {}

    @abstractmethod
    async def authenticate(self, code: str) -> OAuthUserInfo:
        """Server-side flow: exchange an authorization code for the user."""
        pass

    @abstractmethod
    async def verify_token(self, token: str) -> OAuthUserInfo:
        """Client SDK flow: validate a provider token and fetch the user."""
        pass


# =============================================================================
# Google OAuth
# =============================================================================

class GoogleOAuth(OAuthProvider):
    """Google OAuth 2.0 implementation."""

    name = "google"
    failure_code = AuthErrorCode.OAUTH_GOOGLE_FAILED

    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
    SCOPE = "openid email profile"

    def _extra_authorize_params(self) -> dict[str, str]:
        return {"access_type": "online", "prompt": "select_account"}

    async def verify_token(self, token: str) -> OAuthUserInfo:
        """Validate a Google ID token and extract the profile."""
        data = await self.http.get(self.TOKENINFO_URL, params={"id_token": token})

        if data.get("aud") != self.client_id:
            logger.warning("Google ID token issued for a different client")
            raise OAuthError("Invalid Google ID token")

        email = _require(data.get("email"), "Email", self.name)
        return OAuthUserInfo(
            provider=self.name,
            provider_user_id=_require(data.get("sub"), "Subject", self.name),
            email=email,
            name=data.get("name") or email.split("@")[0],
            picture_url=data.get("picture"),
            email_verified=str(data.get("email_verified", "false")).lower() == "true",
        )

    async def authenticate(self, code: str) -> OAuthUserInfo:
        """Exchange an authorization code and read the userinfo endpoint."""
        tokens = await self.http.post(
            self.TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        access_token = _require(tokens.get("access_token"), "Access token", self.name)

        data = await self.http.get(
            self.USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        email = _require(data.get("email"), "Email", self.name)
        return OAuthUserInfo(
            provider=self.name,
            provider_user_id=_require(data.get("id"), "Subject", self.name),
            email=email,
            name=data.get("name") or email.split("@")[0],
            picture_url=data.get("picture"),
            email_verified=bool(data.get("verified_email", False)),
        )


# =============================================================================
# Microsoft OAuth
# =============================================================================

class MicrosoftOAuth(OAuthProvider):
    """
    Microsoft identity platform (v2.0 endpoints).

    ID tokens are verified locally against the tenant's published signing
    keys; the audience must be our client id.
    """

    name = "microsoft"
    failure_code = AuthErrorCode.OAUTH_MICROSOFT_FAILED
    SCOPE = "openid profile email"

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        jwks_client: jwt.PyJWKClient | None = None,
    ):
        super().__init__(settings, transport)
        self._jwks_client = jwks_client

    @property
    def base_url(self) -> str:
        return f"https://login.microsoftonline.com/{self.settings.microsoft_oauth_tenant}"

    @property
    def AUTHORIZE_URL(self) -> str:  # noqa: N802 - tenant-specific
        return f"{self.base_url}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth2/v2.0/token"

    @property
    def jwks_client(self) -> jwt.PyJWKClient:
        """Lazy-load the signing key client (keys are cached by PyJWT)."""
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(
                f"{self.base_url}/discovery/v2.0/keys",
                timeout=int(self.settings.oauth_http_timeout_seconds),
            )
        return self._jwks_client

    def _extra_authorize_params(self) -> dict[str, str]:
        return {"response_mode": "query"}

    async def verify_token(self, token: str) -> OAuthUserInfo:
        """Verify a Microsoft ID token and extract the profile."""
        try:
            signing_key = await asyncio.to_thread(self.jwks_client.get_signing_key_from_jwt, token)
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.client_id,
                options={"require": ["exp", "aud"]},
            )
        except jwt.PyJWKClientConnectionError as e:
            logger.error(f"Microsoft signing keys unavailable: {e}")
            raise OAuthError("Microsoft authentication failed", code=self.failure_code)
        except jwt.PyJWTError as e:
            logger.info(f"Rejected Microsoft ID token: {e}")
            raise OAuthError("Invalid Microsoft ID token")

        email = _require(payload.get("preferred_username") or payload.get("email"), "Email", self.name)
        return OAuthUserInfo(
            provider=self.name,
            provider_user_id=_require(payload.get("oid") or payload.get("sub"), "Subject", self.name),
            email=email,
            name=payload.get("name") or email.split("@")[0],
            email_verified=bool(payload.get("email_verified", True)),
        )

    async def authenticate(self, code: str) -> OAuthUserInfo:
        tokens = await self.http.post(
            self.token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
                "scope": self.SCOPE,
            },
        )
        id_token = _require(tokens.get("id_token"), "ID token", self.name)
        return await self.verify_token(id_token)


# =============================================================================
# Facebook OAuth
# =============================================================================

class FacebookOAuth(OAuthProvider):
    """Facebook Login. User tokens are checked against our app via debug_token."""

    name = "facebook"
    failure_code = AuthErrorCode.OAUTH_FACEBOOK_FAILED

    AUTHORIZE_URL = "https://www.facebook.com/v18.0/dialog/oauth"
    TOKEN_URL = "https://graph.facebook.com/v18.0/oauth/access_token"
    DEBUG_TOKEN_URL = "https://graph.facebook.com/debug_token"
    USERINFO_URL = "https://graph.facebook.com/v18.0/me"
    SCOPE = "email,public_profile"

    async def _app_access_token(self) -> str:
        data = await self.http.get(
            self.TOKEN_URL,
            params={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
        )
        token = data.get("access_token")
        if not token:
            logger.error("Failed to get Facebook app token")
            raise OAuthError("Facebook authentication failed", code=self.failure_code)
        return token

    async def verify_token(self, token: str) -> OAuthUserInfo:
        """Validate a user access token and fetch the profile."""
        app_token = await self._app_access_token()
        debug = await self.http.get(
            self.DEBUG_TOKEN_URL,
            params={"input_token": token, "access_token": app_token},
        )
        info = debug.get("data") or {}
        if not info.get("is_valid") or str(info.get("app_id")) != self.client_id:
            raise OAuthError("Invalid Facebook access token")

        data = await self.http.get(
            self.USERINFO_URL,
            params={"fields": "id,email,name,picture.type(large)", "access_token": token},
        )
        email = _require(data.get("email"), "Email", self.name)
        return OAuthUserInfo(
            provider=self.name,
            provider_user_id=_require(data.get("id"), "Subject", self.name),
            email=email,
            name=data.get("name") or email.split("@")[0],
            picture_url=data.get("picture", {}).get("data", {}).get("url"),
            email_verified=True,  # Facebook only returns confirmed emails
        )

    async def authenticate(self, code: str) -> OAuthUserInfo:
        tokens = await self.http.get(
            self.TOKEN_URL,
            params={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
        )
        access_token = _require(tokens.get("access_token"), "Access token", self.name)
        return await self.verify_token(access_token)


# =============================================================================
# OAuth Manager
# =============================================================================

PROVIDER_CLASSES: tuple[type[OAuthProvider], ...] = (GoogleOAuth, MicrosoftOAuth, FacebookOAuth)


class OAuthManager:
    """Manage all configured OAuth providers."""

    STATE_TTL_SECONDS = 600

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        providers: list[OAuthProvider] | None = None,
    ):
        candidates = providers if providers is not None else [cls(settings, transport) for cls in PROVIDER_CLASSES]
        self.providers: dict[str, OAuthProvider] = {p.name: p for p in candidates if p.is_configured}

        skipped = [p.name for p in candidates if not p.is_configured]
        if skipped:
            logger.info(f"OAuth providers not configured, skipping: {', '.join(skipped)}")

        # State tokens for CSRF protection: state -> (provider, issued at)
        self._pending_states: dict[str, tuple[str, float]] = {}

    def get_available_providers(self) -> list[str]:
        """Get list of configured OAuth providers."""
        return list(self.providers)

    def get(self, provider: str) -> OAuthProvider:
        strategy = self.providers.get(provider)
        if strategy is None:
            raise OAuthError(
                f"Provider '{provider}' not available",
                code=AuthErrorCode.OAUTH_PROVIDER_UNAVAILABLE,
                details={"available": self.get_available_providers()},
            )
        return strategy

    def create_state(self, provider: str) -> str:
        """Create a state token for CSRF protection."""
        self._prune_states()
        state = generate_id("oauth")
        self._pending_states[state] = (provider, time.monotonic())
        return state

    def validate_state(self, state: str) -> str | None:
        """Validate and consume a state token. Returns provider if valid."""
        entry = self._pending_states.pop(state, None)
        if entry is None:
            return None
        provider, issued_at = entry
        if time.monotonic() - issued_at > self.STATE_TTL_SECONDS:
            return None
        return provider

    def _prune_states(self) -> None:
        cutoff = time.monotonic() - self.STATE_TTL_SECONDS
        for state in [s for s, (_, issued) in self._pending_states.items() if issued < cutoff]:
            del self._pending_states[state]

    def get_authorize_url(self, provider: str) -> str:
        """Get authorization URL for a provider."""
        strategy = self.get(provider)
        return strategy.get_authorize_url(self.create_state(provider))

    async def authenticate(self, provider: str, code: str) -> OAuthUserInfo:
        """Complete the authorization-code flow for a provider."""
        return await self.get(provider).authenticate(code)

    async def verify_token(self, provider: str, token: str) -> OAuthUserInfo:
        """Verify a token obtained client-side from a provider SDK."""
        return await self.get(provider).verify_token(token)
