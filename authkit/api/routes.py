# =============================================================================
# Auth API Routes
# =============================================================================
#
# Endpoints:
#   POST /auth/register            - Create account (sends verification email)
#   POST /auth/login               - Get tokens
#   POST /auth/refresh             - Rotate refresh token, get new pair
#   POST /auth/logout              - Revoke the refresh token's session
#   GET  /auth/me                  - Get current user
#   POST /auth/verify-email        - Verify email address
#   POST /auth/resend-verification - Send a new verification link
#   POST /auth/forgot-password     - Request password reset
#   POST /auth/reset-password      - Reset password with token
#
# OAuth:
#   GET  /auth/providers            - List available OAuth providers
#   GET  /auth/{provider}/authorize - Get OAuth redirect URL
#   POST /auth/{provider}/callback  - Complete OAuth code flow
#   POST /auth/{provider}/token     - Log in with a provider-issued token
#
# =============================================================================

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field

from authkit.api.state import AppState, get_kit
from authkit.auth.context import AuthContext
from authkit.auth.jwt import TokenPair
from authkit.auth.policies import require_auth
from authkit.core.errors import AuthErrorCode, OAuthError
from authkit.core.models import UserProfile

router = APIRouter(prefix="/auth", tags=["auth"])


# =============================================================================
# Request/Response Models
# =============================================================================

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    username: str | None = Field(default=None, min_length=3, max_length=40)
    full_name: str | None = None
    phone_number: str | None = None


class RegisterResponse(BaseModel):
    user: UserProfile
    email_sent: bool
    message: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str | None = None


class VerifyEmailRequest(BaseModel):
    token: str


class EmailRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


class OAuthCallbackRequest(BaseModel):
    code: str
    state: str | None = None


class OAuthTokenRequest(BaseModel):
    token: str


class MessageResponse(BaseModel):
    message: str


# =============================================================================
# Public Endpoints
# =============================================================================

@router.post("/register", response_model=RegisterResponse, status_code=201)
async def register(data: RegisterRequest, kit: AppState = Depends(get_kit)):
    """
    Create a new account.

    The account starts unverified; a verification link is emailed.
    """
    result = await kit.auth.register(
        email=data.email,
        password=data.password,
        username=data.username,
        full_name=data.full_name,
        phone_number=data.phone_number,
    )
    message = (
        "Registration successful. Please check your email to verify your account."
        if result.email_sent
        else "Registration successful, but the verification email could not be sent. Please request a new one."
    )
    return RegisterResponse(user=result.user, email_sent=result.email_sent, message=message)


@router.post("/login", response_model=TokenPair)
async def login(data: LoginRequest, kit: AppState = Depends(get_kit)):
    return await kit.auth.login(data.email, data.password)


@router.post("/refresh", response_model=TokenPair)
async def refresh(data: RefreshRequest, kit: AppState = Depends(get_kit)):
    """
    Exchange a refresh token for a new pair.

    The presented token is spent; presenting it again revokes the session.
    """
    return await kit.auth.refresh(data.refresh_token)


@router.post("/logout", response_model=MessageResponse)
async def logout(data: RefreshRequest, kit: AppState = Depends(get_kit)):
    await kit.auth.logout(data.refresh_token)
    return MessageResponse(message="Logged out successfully")


@router.post("/verify-email", response_model=UserProfile)
async def verify_email(data: VerifyEmailRequest, kit: AppState = Depends(get_kit)):
    return await kit.auth.verify_email(data.token)


@router.post("/resend-verification", response_model=MessageResponse)
async def resend_verification(data: EmailRequest, kit: AppState = Depends(get_kit)):
    await kit.auth.resend_verification(data.email)
    return MessageResponse(message="If the account exists and is unverified, a new link has been sent")


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(data: EmailRequest, kit: AppState = Depends(get_kit)):
    """
    Request password reset email.

    Always returns success to prevent email enumeration.
    """
    await kit.auth.forgot_password(data.email)
    return MessageResponse(message="If an account exists with this email, a reset link has been sent")


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(data: ResetPasswordRequest, kit: AppState = Depends(get_kit)):
    await kit.auth.reset_password(data.token, data.new_password)
    return MessageResponse(message="Password reset successfully")


# =============================================================================
# Protected Endpoints
# =============================================================================

@router.get("/me", response_model=UserProfile)
async def get_current_user(
    ctx: AuthContext = Depends(require_auth()),
    kit: AppState = Depends(get_kit),
):
    """Get the current authenticated user."""
    return await kit.auth.get_me(ctx.user_id)


# =============================================================================
# OAuth Endpoints
# =============================================================================

@router.get("/providers")
async def list_oauth_providers(kit: AppState = Depends(get_kit)):
    """Only returns providers that are properly configured."""
    return {"providers": kit.oauth.get_available_providers()}


@router.get("/{provider}/authorize")
async def oauth_authorize(provider: str, kit: AppState = Depends(get_kit)):
    """
    Get the OAuth authorization URL.

    Redirect the user to this URL to start the OAuth flow.
    """
    return {"authorize_url": kit.oauth.get_authorize_url(provider)}


@router.post("/{provider}/callback", response_model=TokenPair)
async def oauth_callback(provider: str, data: OAuthCallbackRequest, kit: AppState = Depends(get_kit)):
    """Exchange the authorization code for user info and return tokens."""
    # Validate state (CSRF protection)
    if data.state and kit.oauth.validate_state(data.state) != provider:
        raise OAuthError("Invalid state parameter", code=AuthErrorCode.OAUTH_INVALID_TOKEN)

    return await kit.auth.login_with_provider(provider, code=data.code)


@router.post("/{provider}/token", response_model=TokenPair)
async def oauth_token(provider: str, data: OAuthTokenRequest, kit: AppState = Depends(get_kit)):
    """Log in with an ID/access token obtained by a provider's client SDK."""
    return await kit.auth.login_with_provider(provider, token=data.token)
