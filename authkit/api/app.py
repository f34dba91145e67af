"""
FastAPI application factory.

    uvicorn authkit.api.app:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authkit.api.admin import router as admin_router
from authkit.api.routes import router as auth_router
from authkit.api.state import AppState, build_state
from authkit.config import Settings, get_settings
from authkit.core.errors import AuthErrorCode, AuthKitError, StructuredError
from authkit.integrations.email import MailService
from authkit.integrations.oauth import OAuthManager
from authkit.storage import StorageProvider, create_memory_storage

logger = logging.getLogger(__name__)


# =============================================================================
# Lifespan
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Seed defaults, then refuse to start without an admin role."""
    kit: AppState = app.state.kit

    if kit.settings.seed_defaults_on_startup:
        await kit.seed.seed_defaults()

    # Raises AdminRoleMissingError: authorization can't work without it
    admin_role_id = await kit.admin_roles.load_admin_role_id()
    logger.info(
        f"authkit starting in {kit.settings.environment} mode "
        f"(admin role {admin_role_id}, providers: {kit.oauth.get_available_providers() or 'none'})"
    )

    yield

    logger.info("authkit shutting down")


# =============================================================================
# Error handlers
# =============================================================================


async def handle_auth_error(request: Request, exc: AuthKitError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code.value} on {request.method} {request.url.path}: {exc.message}")
    body = exc.to_structured(request.url.path)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    body = StructuredError(
        status_code=500,
        code=AuthErrorCode.SYSTEM_ERROR,
        message="An unexpected error occurred",
        path=request.url.path,
    )
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))


# =============================================================================
# App Setup
# =============================================================================


def create_app(
    settings: Settings | None = None,
    storage: StorageProvider | None = None,
    mail: MailService | None = None,
    oauth: OAuthManager | None = None,
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="authkit",
        description="Authentication, RBAC and federated login",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.kit = build_state(settings, storage or create_memory_storage(), mail, oauth)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AuthKitError, handle_auth_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(auth_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
