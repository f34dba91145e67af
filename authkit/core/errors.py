"""
Error taxonomy.

Every failure that leaves the library carries a stable, machine-readable
code, an HTTP status, a human message and a timestamp. The code values and
the code -> status table are part of the public contract: clients switch
on them, so existing entries never change meaning.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from authkit.core.utils import utc_now


class AuthErrorCode(str, Enum):
    """Stable error codes, grouped by domain."""

    # Authentication
    INVALID_CREDENTIALS = "AUTH_001"
    EMAIL_NOT_VERIFIED = "AUTH_002"
    ACCOUNT_BANNED = "AUTH_003"
    INVALID_TOKEN = "AUTH_004"
    TOKEN_EXPIRED = "AUTH_005"
    REFRESH_TOKEN_MISSING = "AUTH_006"
    UNAUTHORIZED = "AUTH_007"
    ACCESS_DENIED = "AUTH_008"
    TOKEN_REUSED = "AUTH_009"

    # Registration
    EMAIL_EXISTS = "REG_001"
    USERNAME_EXISTS = "REG_002"
    PHONE_EXISTS = "REG_003"
    CREDENTIALS_EXIST = "REG_004"

    # User management
    USER_NOT_FOUND = "USER_001"
    USER_ALREADY_VERIFIED = "USER_002"

    # Roles & permissions
    ROLE_NOT_FOUND = "ROLE_001"
    ROLE_EXISTS = "ROLE_002"
    DEFAULT_ROLE_MISSING = "ROLE_003"
    ADMIN_ROLE_PROTECTED = "ROLE_004"
    PERMISSION_NOT_FOUND = "PERM_001"
    PERMISSION_EXISTS = "PERM_002"

    # Passwords
    INVALID_PASSWORD = "PWD_001"
    PASSWORD_RESET_FAILED = "PWD_002"

    # Email
    EMAIL_SEND_FAILED = "EMAIL_001"
    VERIFICATION_FAILED = "EMAIL_002"

    # OAuth
    OAUTH_INVALID_TOKEN = "OAUTH_001"
    OAUTH_GOOGLE_FAILED = "OAUTH_002"
    OAUTH_MICROSOFT_FAILED = "OAUTH_003"
    OAUTH_FACEBOOK_FAILED = "OAUTH_004"
    OAUTH_PROVIDER_UNAVAILABLE = "OAUTH_005"

    # System
    SYSTEM_ERROR = "SYS_001"
    CONFIG_ERROR = "SYS_002"
    DATABASE_ERROR = "SYS_003"


ERROR_STATUS: dict[AuthErrorCode, int] = {
    # 400
    AuthErrorCode.INVALID_PASSWORD: 400,
    AuthErrorCode.OAUTH_INVALID_TOKEN: 400,
    AuthErrorCode.OAUTH_PROVIDER_UNAVAILABLE: 400,
    # 401
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.INVALID_TOKEN: 401,
    AuthErrorCode.TOKEN_EXPIRED: 401,
    AuthErrorCode.TOKEN_REUSED: 401,
    AuthErrorCode.UNAUTHORIZED: 401,
    AuthErrorCode.REFRESH_TOKEN_MISSING: 401,
    # 403
    AuthErrorCode.EMAIL_NOT_VERIFIED: 403,
    AuthErrorCode.ACCOUNT_BANNED: 403,
    AuthErrorCode.ACCESS_DENIED: 403,
    # 404
    AuthErrorCode.USER_NOT_FOUND: 404,
    AuthErrorCode.ROLE_NOT_FOUND: 404,
    AuthErrorCode.PERMISSION_NOT_FOUND: 404,
    # 409
    AuthErrorCode.EMAIL_EXISTS: 409,
    AuthErrorCode.USERNAME_EXISTS: 409,
    AuthErrorCode.PHONE_EXISTS: 409,
    AuthErrorCode.CREDENTIALS_EXIST: 409,
    AuthErrorCode.USER_ALREADY_VERIFIED: 409,
    AuthErrorCode.ROLE_EXISTS: 409,
    AuthErrorCode.ADMIN_ROLE_PROTECTED: 409,
    AuthErrorCode.PERMISSION_EXISTS: 409,
    # 500
    AuthErrorCode.SYSTEM_ERROR: 500,
    AuthErrorCode.CONFIG_ERROR: 500,
    AuthErrorCode.DATABASE_ERROR: 500,
    AuthErrorCode.EMAIL_SEND_FAILED: 500,
    AuthErrorCode.VERIFICATION_FAILED: 500,
    AuthErrorCode.PASSWORD_RESET_FAILED: 500,
    AuthErrorCode.DEFAULT_ROLE_MISSING: 500,
    AuthErrorCode.OAUTH_GOOGLE_FAILED: 500,
    AuthErrorCode.OAUTH_MICROSOFT_FAILED: 500,
    AuthErrorCode.OAUTH_FACEBOOK_FAILED: 500,
}


class StructuredError(BaseModel):
    """Error body returned to clients."""

    status_code: int
    code: AuthErrorCode
    message: str
    details: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    path: str | None = None


# =============================================================================
# Exceptions
# =============================================================================


class AuthKitError(Exception):
    """
    Base class for every error the library raises on purpose.

    Subclasses pick a default code; callers can override it per raise.
    The HTTP status always follows ERROR_STATUS so the mapping stays stable.
    """

    code: AuthErrorCode = AuthErrorCode.SYSTEM_ERROR
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: AuthErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if code is not None:
            self.code = code
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return ERROR_STATUS.get(self.code, 500)

    def to_structured(self, path: str | None = None) -> StructuredError:
        return StructuredError(
            status_code=self.status_code,
            code=self.code,
            message=self.message,
            details=self.details,
            path=path,
        )


class AuthenticationError(AuthKitError):
    code = AuthErrorCode.UNAUTHORIZED
    default_message = "Authentication required"


class TokenError(AuthKitError):
    """Base for token failures. Messages never say more than invalid/expired."""

    code = AuthErrorCode.INVALID_TOKEN
    default_message = "Invalid token"


class TokenInvalidError(TokenError):
    pass


class TokenExpiredError(TokenError):
    code = AuthErrorCode.TOKEN_EXPIRED
    default_message = "Token has expired"


class TokenReusedError(TokenError):
    """A superseded refresh token was presented again."""

    code = AuthErrorCode.TOKEN_REUSED
    default_message = "Refresh token has already been used"


class AuthorizationError(AuthKitError):
    code = AuthErrorCode.ACCESS_DENIED
    default_message = "Access denied"


class NotFoundError(AuthKitError):
    code = AuthErrorCode.USER_NOT_FOUND
    default_message = "Resource not found"


class ConflictError(AuthKitError):
    code = AuthErrorCode.CREDENTIALS_EXIST
    default_message = "Resource already exists"


class PasswordError(AuthKitError):
    code = AuthErrorCode.INVALID_PASSWORD
    default_message = "Password does not meet requirements"


class HashingError(AuthKitError):
    """The hashing backend failed (salt generation, bad cost factor)."""

    code = AuthErrorCode.SYSTEM_ERROR
    default_message = "Password hashing failed"


class InvalidHashFormat(AuthKitError):
    """A stored hash could not be parsed."""

    code = AuthErrorCode.SYSTEM_ERROR
    default_message = "Stored credential is malformed"


class EmailDeliveryError(AuthKitError):
    code = AuthErrorCode.EMAIL_SEND_FAILED
    default_message = "Failed to send email"


class OAuthError(AuthKitError):
    """OAuth flow error."""

    code = AuthErrorCode.OAUTH_INVALID_TOKEN
    default_message = "OAuth authentication failed"


class ConfigurationError(AuthKitError):
    code = AuthErrorCode.CONFIG_ERROR
    default_message = "Server configuration error"


class AdminRoleMissingError(ConfigurationError):
    """The configured admin (or default) role does not exist."""

    code = AuthErrorCode.DEFAULT_ROLE_MISSING
    default_message = "Required role is not configured"


class DuplicateKeyError(Exception):
    """
    Raised by storage when a uniqueness constraint rejects a write.

    ``field`` names the constraint: email, username, phone, role_name,
    permission_name or external_identity.
    """

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Duplicate value for unique field: {field}")


DUPLICATE_FIELD_CODES: dict[str, AuthErrorCode] = {
    "email": AuthErrorCode.EMAIL_EXISTS,
    "username": AuthErrorCode.USERNAME_EXISTS,
    "phone": AuthErrorCode.PHONE_EXISTS,
    "role_name": AuthErrorCode.ROLE_EXISTS,
    "permission_name": AuthErrorCode.PERMISSION_EXISTS,
    "external_identity": AuthErrorCode.CREDENTIALS_EXIST,
}


def conflict_from_duplicate(exc: DuplicateKeyError) -> ConflictError:
    """Translate a storage uniqueness violation into the field-specific code."""
    code = DUPLICATE_FIELD_CODES.get(exc.field, AuthErrorCode.CREDENTIALS_EXIST)
    messages = {
        AuthErrorCode.EMAIL_EXISTS: "Email already in use",
        AuthErrorCode.USERNAME_EXISTS: "Username already in use",
        AuthErrorCode.PHONE_EXISTS: "Phone number already in use",
        AuthErrorCode.ROLE_EXISTS: "Role already exists",
        AuthErrorCode.PERMISSION_EXISTS: "Permission already exists",
    }
    return ConflictError(messages.get(code, "An account with these credentials already exists"), code=code)
