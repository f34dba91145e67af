"""Shared fixtures."""

from __future__ import annotations

import pytest

from authkit.api.state import AppState, build_state
from authkit.config import Settings
from authkit.integrations.email import LoggingMailService
from authkit.storage import StorageProvider, create_memory_storage


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment, with a cheap hash cost."""
    return Settings(
        _env_file=None,
        environment="test",
        jwt_secret_key="test-access-secret",
        jwt_refresh_secret_key="test-refresh-secret",
        jwt_email_secret_key="test-email-secret",
        jwt_reset_secret_key="test-reset-secret",
        password_hash_iterations=1_000,
        google_oauth_client_id="",
        google_oauth_client_secret="",
        microsoft_oauth_client_id="",
        microsoft_oauth_client_secret="",
        facebook_oauth_client_id="",
        facebook_oauth_client_secret="",
    )


@pytest.fixture
def storage() -> StorageProvider:
    return create_memory_storage()


@pytest.fixture
def mail() -> LoggingMailService:
    return LoggingMailService()


@pytest.fixture
def kit(settings, storage, mail) -> AppState:
    """All services wired against in-memory storage."""
    return build_state(settings, storage, mail)


@pytest.fixture
async def seeded_kit(kit) -> AppState:
    """Kit with the default permissions, admin role and user role in place."""
    await kit.seed.seed_defaults()
    return kit


@pytest.fixture
def make_user(kit):
    """Create a verified user directly through the admin service."""

    async def _make(email: str, password: str = "pw123!", role_ids: list[str] | None = None, **fields):
        return await kit.users.create(email=email, password=password, role_ids=role_ids or [], **fields)

    return _make
