"""
Tests for the OAuth providers, run against httpx.MockTransport.

No request leaves the process: every provider endpoint is answered by a
handler below.
"""

from datetime import timedelta
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from authkit.api.state import build_state
from authkit.core.errors import AuthenticationError, AuthErrorCode, AuthKitError, OAuthError
from authkit.core.utils import utc_now
from authkit.integrations import oauth as oauth_module
from authkit.integrations.oauth import (
    FacebookOAuth,
    GoogleOAuth,
    MicrosoftOAuth,
    OAuthManager,
    OAuthProvider,
)


# =============================================================================
# Fixtures
# =============================================================================


def transport(routes: dict):
    """MockTransport answering `(method, path)` keys; unknown routes 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        answer = routes.get((request.method, request.url.path))
        if answer is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(answer):
            return answer(request)
        return answer

    return httpx.MockTransport(handler)


def google_tokeninfo(**overrides):
    body = {
        "aud": "google-client",
        "sub": "g-123",
        "email": "gina@example.com",
        "email_verified": "true",
        "name": "Gina",
        "picture": "https://example.com/gina.png",
    }
    body.update(overrides)
    return {("GET", "/tokeninfo"): httpx.Response(200, json=body)}


@pytest.fixture
def oauth_settings(settings):
    settings.google_oauth_client_id = "google-client"
    settings.google_oauth_client_secret = "google-secret"
    settings.microsoft_oauth_client_id = "ms-client"
    settings.microsoft_oauth_client_secret = "ms-secret"
    settings.facebook_oauth_client_id = "1234"
    settings.facebook_oauth_client_secret = "fb-secret"
    return settings


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class FakeJWKSClient:
    """Stands in for PyJWKClient: hands out one fixed public key."""

    def __init__(self, public_key, error: Exception | None = None):
        self.public_key = public_key
        self.error = error

    def get_signing_key_from_jwt(self, token):
        if self.error:
            raise self.error
        return SimpleNamespace(key=self.public_key)


def ms_id_token(key, **overrides):
    claims = {
        "aud": "ms-client",
        "oid": "ms-oid-1",
        "sub": "ms-sub-1",
        "preferred_username": "mia@example.com",
        "name": "Mia",
        "exp": utc_now() + timedelta(minutes=5),
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="RS256")


# =============================================================================
# Google
# =============================================================================


class TestGoogle:
    async def test_verify_token(self, oauth_settings):
        google = GoogleOAuth(oauth_settings, transport(google_tokeninfo()))
        info = await google.verify_token("id-token")

        assert info.provider == "google"
        assert info.provider_user_id == "g-123"
        assert info.email == "gina@example.com"
        assert info.email_verified

    async def test_unverified_email_reported(self, oauth_settings):
        google = GoogleOAuth(oauth_settings, transport(google_tokeninfo(email_verified="false")))
        assert not (await google.verify_token("id-token")).email_verified

    async def test_token_for_another_client(self, oauth_settings):
        google = GoogleOAuth(oauth_settings, transport(google_tokeninfo(aud="someone-else")))
        with pytest.raises(OAuthError) as exc:
            await google.verify_token("id-token")
        assert exc.value.code == AuthErrorCode.OAUTH_INVALID_TOKEN
        assert exc.value.status_code == 400

    async def test_missing_email(self, oauth_settings):
        google = GoogleOAuth(oauth_settings, transport(google_tokeninfo(email=None)))
        with pytest.raises(OAuthError) as exc:
            await google.verify_token("id-token")
        assert exc.value.code == AuthErrorCode.OAUTH_INVALID_TOKEN

    async def test_rejected_token_is_a_client_error(self, oauth_settings):
        routes = {("GET", "/tokeninfo"): httpx.Response(400, json={"error": "invalid_token"})}
        google = GoogleOAuth(oauth_settings, transport(routes))
        with pytest.raises(OAuthError) as exc:
            await google.verify_token("id-token")
        assert exc.value.code == AuthErrorCode.OAUTH_INVALID_TOKEN

    async def test_provider_outage(self, oauth_settings):
        routes = {("GET", "/tokeninfo"): httpx.Response(503, text="unavailable")}
        google = GoogleOAuth(oauth_settings, transport(routes))
        with pytest.raises(OAuthError) as exc:
            await google.verify_token("id-token")
        assert exc.value.code == AuthErrorCode.OAUTH_GOOGLE_FAILED
        assert exc.value.status_code == 500

    async def test_timeout(self, oauth_settings):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        google = GoogleOAuth(oauth_settings, transport({("GET", "/tokeninfo"): slow}))
        with pytest.raises(OAuthError) as exc:
            await google.verify_token("id-token")
        assert exc.value.code == AuthErrorCode.OAUTH_GOOGLE_FAILED

    async def test_non_json_body(self, oauth_settings):
        routes = {("GET", "/tokeninfo"): httpx.Response(200, text="<html>oops</html>")}
        google = GoogleOAuth(oauth_settings, transport(routes))
        with pytest.raises(OAuthError) as exc:
            await google.verify_token("id-token")
        assert exc.value.code == AuthErrorCode.OAUTH_GOOGLE_FAILED

    async def test_code_exchange(self, oauth_settings):
        seen = {}

        def exchange(request):
            seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(200, json={"access_token": "ya29.token"})

        def userinfo(request):
            assert request.headers["Authorization"] == "Bearer ya29.token"
            return httpx.Response(200, json={"id": "g-123", "email": "gina@example.com", "verified_email": True})

        routes = {("POST", "/token"): exchange, ("GET", "/oauth2/v2/userinfo"): userinfo}
        info = await GoogleOAuth(oauth_settings, transport(routes)).authenticate("auth-code")

        assert seen["code"] == "auth-code"
        assert seen["grant_type"] == "authorization_code"
        assert info.provider_user_id == "g-123"
        assert info.name == "gina"

    def test_authorize_url(self, oauth_settings):
        url = GoogleOAuth(oauth_settings).get_authorize_url("oauth_state")
        query = parse_qs(urlparse(url).query)

        assert url.startswith(GoogleOAuth.AUTHORIZE_URL)
        assert query["client_id"] == ["google-client"]
        assert query["state"] == ["oauth_state"]
        assert query["redirect_uri"] == ["postmessage"]


# =============================================================================
# Microsoft
# =============================================================================


class TestMicrosoft:
    def provider(self, settings, key, **kwargs):
        return MicrosoftOAuth(settings, jwks_client=FakeJWKSClient(key.public_key(), **kwargs))

    async def test_verify_id_token(self, oauth_settings, rsa_key):
        info = await self.provider(oauth_settings, rsa_key).verify_token(ms_id_token(rsa_key))

        assert info.provider_user_id == "ms-oid-1"
        assert info.email == "mia@example.com"
        assert info.email_verified

    async def test_wrong_audience(self, oauth_settings, rsa_key):
        token = ms_id_token(rsa_key, aud="another-app")
        with pytest.raises(OAuthError) as exc:
            await self.provider(oauth_settings, rsa_key).verify_token(token)
        assert exc.value.code == AuthErrorCode.OAUTH_INVALID_TOKEN

    async def test_signed_by_another_key(self, oauth_settings, rsa_key):
        stranger = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(OAuthError) as exc:
            await self.provider(oauth_settings, rsa_key).verify_token(ms_id_token(stranger))
        assert exc.value.code == AuthErrorCode.OAUTH_INVALID_TOKEN

    async def test_keys_unreachable(self, oauth_settings, rsa_key):
        provider = self.provider(oauth_settings, rsa_key, error=jwt.PyJWKClientConnectionError("down"))
        with pytest.raises(OAuthError) as exc:
            await provider.verify_token(ms_id_token(rsa_key))
        assert exc.value.code == AuthErrorCode.OAUTH_MICROSOFT_FAILED

    async def test_code_exchange_verifies_id_token(self, oauth_settings, rsa_key):
        token = ms_id_token(rsa_key)
        routes = {("POST", "/common/oauth2/v2.0/token"): httpx.Response(200, json={"id_token": token})}
        provider = MicrosoftOAuth(
            oauth_settings,
            transport(routes),
            jwks_client=FakeJWKSClient(rsa_key.public_key()),
        )

        assert (await provider.authenticate("auth-code")).email == "mia@example.com"

    def test_tenant_in_urls(self, oauth_settings):
        oauth_settings.microsoft_oauth_tenant = "contoso"
        provider = MicrosoftOAuth(oauth_settings)

        assert provider.get_authorize_url().startswith(
            "https://login.microsoftonline.com/contoso/oauth2/v2.0/authorize?"
        )
        assert "/auth/microsoft/callback" in provider.redirect_uri


# =============================================================================
# Facebook
# =============================================================================


def facebook_routes(debug: dict, me: dict | None = None):
    return {
        ("GET", "/v18.0/oauth/access_token"): httpx.Response(200, json={"access_token": "app-token"}),
        ("GET", "/debug_token"): httpx.Response(200, json={"data": debug}),
        ("GET", "/v18.0/me"): httpx.Response(
            200,
            json=me or {"id": "fb-1", "email": "fay@example.com", "name": "Fay"},
        ),
    }


class TestFacebook:
    async def test_verify_token(self, oauth_settings):
        provider = FacebookOAuth(oauth_settings, transport(facebook_routes({"is_valid": True, "app_id": "1234"})))
        info = await provider.verify_token("user-token")

        assert info.provider_user_id == "fb-1"
        assert info.email == "fay@example.com"

    async def test_invalid_token(self, oauth_settings):
        provider = FacebookOAuth(oauth_settings, transport(facebook_routes({"is_valid": False})))
        with pytest.raises(OAuthError) as exc:
            await provider.verify_token("user-token")
        assert exc.value.code == AuthErrorCode.OAUTH_INVALID_TOKEN

    async def test_token_for_another_app(self, oauth_settings):
        provider = FacebookOAuth(oauth_settings, transport(facebook_routes({"is_valid": True, "app_id": "9999"})))
        with pytest.raises(OAuthError):
            await provider.verify_token("user-token")

    async def test_missing_email(self, oauth_settings):
        routes = facebook_routes({"is_valid": True, "app_id": "1234"}, me={"id": "fb-1", "name": "Fay"})
        with pytest.raises(OAuthError) as exc:
            await FacebookOAuth(oauth_settings, transport(routes)).verify_token("user-token")
        assert exc.value.code == AuthErrorCode.OAUTH_INVALID_TOKEN

    async def test_app_token_unavailable(self, oauth_settings):
        routes = {("GET", "/v18.0/oauth/access_token"): httpx.Response(200, json={})}
        with pytest.raises(OAuthError) as exc:
            await FacebookOAuth(oauth_settings, transport(routes)).verify_token("user-token")
        assert exc.value.code == AuthErrorCode.OAUTH_FACEBOOK_FAILED


# =============================================================================
# Manager
# =============================================================================


class TestOAuthManager:
    def test_only_configured_providers(self, settings):
        settings.google_oauth_client_id = "google-client"
        settings.google_oauth_client_secret = "google-secret"
        settings.facebook_oauth_client_id = "1234"  # no secret

        assert OAuthManager(settings).get_available_providers() == ["google"]

    async def test_unknown_provider(self, settings):
        manager = OAuthManager(settings)
        with pytest.raises(OAuthError) as exc:
            await manager.verify_token("github", "token")
        assert exc.value.code == AuthErrorCode.OAUTH_PROVIDER_UNAVAILABLE
        assert exc.value.details == {"available": []}

    def test_state_is_single_use(self, oauth_settings):
        manager = OAuthManager(oauth_settings)
        url = manager.get_authorize_url("google")
        state = parse_qs(urlparse(url).query)["state"][0]

        assert manager.validate_state(state) == "google"
        assert manager.validate_state(state) is None
        assert manager.validate_state("oauth_forged") is None

    def test_state_expires(self, oauth_settings, monkeypatch):
        now = [1000.0]
        monkeypatch.setattr(oauth_module, "time", SimpleNamespace(monotonic=lambda: now[0]))
        manager = OAuthManager(oauth_settings)

        state = manager.create_state("google")
        now[0] += OAuthManager.STATE_TTL_SECONDS + 1

        assert manager.validate_state(state) is None

    def test_provider_must_implement_both_flows(self, settings):
        class CodeOnly(OAuthProvider):
            name = "github"

            async def authenticate(self, code):
                ...

        with pytest.raises(TypeError):
            OAuthProvider(settings)
        with pytest.raises(TypeError):
            CodeOnly(settings)


class TestProviderLogin:
    async def test_provider_login_issues_tokens(self, oauth_settings, storage, mail):
        manager = OAuthManager(oauth_settings, transport=transport(google_tokeninfo()))
        kit = build_state(oauth_settings, storage, mail, oauth=manager)

        pair = await kit.auth.login_with_provider("google", token="id-token")
        claims = kit.tokens.verify_access(pair.access_token)

        me = await kit.auth.get_me(claims.sub)
        assert me.email == "gina@example.com"
        assert me.providers == ["google"]

    async def test_banned_user_cannot_use_provider(self, oauth_settings, storage, mail):
        manager = OAuthManager(oauth_settings, transport=transport(google_tokeninfo()))
        kit = build_state(oauth_settings, storage, mail, oauth=manager)
        await kit.auth.login_with_provider("google", token="id-token")
        user = await storage.users.find_by_email("gina@example.com")
        await kit.users.set_ban(user.id, True)

        with pytest.raises(AuthenticationError) as exc:
            await kit.auth.login_with_provider("google", token="id-token")
        assert exc.value.code == AuthErrorCode.ACCOUNT_BANNED

    async def test_needs_code_or_token(self, oauth_settings, kit):
        with pytest.raises(AuthKitError) as exc:
            await kit.auth.login_with_provider("google")
        assert exc.value.code == AuthErrorCode.OAUTH_INVALID_TOKEN
