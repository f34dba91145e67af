"""
Application configuration.

Loads settings from environment variables with sensible defaults.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # ==========================================================================
    # Environment
    # ==========================================================================

    environment: str = "development"

    # ==========================================================================
    # API Server
    # ==========================================================================

    cors_origins: str = "http://localhost:3000,http://localhost:5173"
    frontend_url: str = "http://localhost:3000"

    # ==========================================================================
    # Tokens
    # ==========================================================================

    # One secret per token purpose so a leaked reset secret can't mint sessions
    jwt_secret_key: str = "dev-access-secret-change-in-production"
    jwt_refresh_secret_key: str = "dev-refresh-secret-change-in-production"
    jwt_email_secret_key: str = "dev-email-secret-change-in-production"
    jwt_reset_secret_key: str = "dev-reset-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "authkit"
    jwt_access_token_expire_minutes: int = 15
    jwt_refresh_token_expire_days: int = 7
    jwt_email_token_expire_hours: int = 24
    jwt_reset_token_expire_minutes: int = 60
    jwt_leeway_seconds: int = 5

    # "chain" revokes only the reused token's rotation chain,
    # "all" signs the user out of every session
    refresh_reuse_scope: Literal["chain", "all"] = "chain"

    # ==========================================================================
    # Passwords
    # ==========================================================================

    password_hash_iterations: int = 600_000
    password_min_length: int = 6

    # ==========================================================================
    # Roles & Permissions
    # ==========================================================================

    admin_role_name: str = "admin"
    admin_role_id: str = ""  # pins the admin role by id when set
    admin_role_cache_ttl_seconds: float = 60.0
    role_permission_cache_ttl_seconds: float = 30.0
    default_role_name: str = ""  # empty: new users start without roles
    seed_defaults_on_startup: bool = True
    require_verified_email: bool = True

    # ==========================================================================
    # OAuth providers (optional)
    # ==========================================================================

    google_oauth_client_id: str = ""
    google_oauth_client_secret: str = ""
    google_oauth_redirect_uri: str = "postmessage"
    microsoft_oauth_client_id: str = ""
    microsoft_oauth_client_secret: str = ""
    microsoft_oauth_redirect_uri: str = ""
    microsoft_oauth_tenant: str = "common"
    facebook_oauth_client_id: str = ""
    facebook_oauth_client_secret: str = ""
    facebook_oauth_redirect_uri: str = ""
    oauth_http_timeout_seconds: float = 10.0

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
