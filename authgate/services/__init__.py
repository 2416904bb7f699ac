"""
Business Logic Services Package.

Services depend on the Repository layer for profile-table access and on
the Supabase auth client for identity operations.

The ``create_services()`` factory wires every repository and service
together, returning a typed dict that the caller (a web handler, a CLI,
a test) can consume without knowing the internal dependency graph.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, TypedDict

from authgate.config import AppConfig
from authgate.database import DatabaseManager
from authgate.logger import StructuredLogger, get_logger
from authgate.repositories.profile_repository import ProfileRepository
from authgate.services.auth_service import AuthService
from authgate.services.error_handler import ErrorHandler
from authgate.services.profile_sync import ProfileSyncService
from authgate.services.rate_limiter import SignupRateLimiter
from authgate.services.session_context import SessionContext
from authgate.services.session_manager import SessionManager
from authgate.services.session_store import SessionStore, build_session_store


class ServiceContainer(TypedDict):
    """Typed container for one client context's services."""

    error_handler: ErrorHandler
    profile_repository: ProfileRepository
    profile_sync: ProfileSyncService
    session_store: SessionStore
    session_manager: SessionManager
    rate_limiter: SignupRateLimiter
    auth_service: AuthService
    session_context: SessionContext


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    session_store: Optional[SessionStore] = None,
    logger: Optional[StructuredLogger] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the service layer.  Call it
    once per client context; nothing it builds is shared between two
    containers.

    Args:
        db: Initialised DatabaseManager with a Supabase client.
        config: Application configuration.
        session_store: Persistence backend override.  Defaults to the
            backend named by ``SESSION_STORE_BACKEND``.
        logger: Logger shared by every service.  Defaults to
            ``get_logger("authgate.services")``.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.

    Raises:
        RuntimeError: If *db* has no Supabase client.
    """
    logger = logger or get_logger("authgate.services")
    auth = db.supabase.auth

    # ------------------------------------------------------------------
    # 1. Cross-cutting
    # ------------------------------------------------------------------
    error_handler = ErrorHandler(logger=logger, is_development=config.is_development)

    # ------------------------------------------------------------------
    # 2. Repositories (data-access layer)
    # ------------------------------------------------------------------
    profile_repo = ProfileRepository(db=db, logger=logger, table=config.PROFILE_TABLE)

    # ------------------------------------------------------------------
    # 3. Leaf services
    # ------------------------------------------------------------------
    profile_sync = ProfileSyncService(
        repo=profile_repo,
        auth=auth,
        error_handler=error_handler,
        logger=logger,
    )
    store: SessionStore = session_store or build_session_store(
        config.SESSION_STORE_BACKEND,
        path=Path(config.SESSION_STORE_PATH),
        db=db,
        logger=logger,
        secure=config.secure_storage,
    )
    session_manager = SessionManager(
        auth=auth,
        store=store,
        error_handler=error_handler,
        logger=logger,
        validity_buffer_s=config.SESSION_VALIDITY_BUFFER_S,
        refresh_margin_s=config.REFRESH_MARGIN_S,
        store_max_age_days=config.SESSION_STORE_MAX_AGE_DAYS,
        snapshot_max_bytes=config.SESSION_SNAPSHOT_MAX_BYTES,
    )
    rate_limiter = SignupRateLimiter(logger=logger, cooldown_s=config.SIGNUP_COOLDOWN_S)

    # ------------------------------------------------------------------
    # 4. Orchestration
    # ------------------------------------------------------------------
    auth_service = AuthService(
        auth=auth,
        session_manager=session_manager,
        profile_sync=profile_sync,
        rate_limiter=rate_limiter,
        error_handler=error_handler,
        logger=logger,
        reset_redirect=config.reset_password_redirect,
        verification_redirect=config.verification_redirect,
    )
    session_context = SessionContext(
        auth_service=auth_service,
        session_manager=session_manager,
        error_handler=error_handler,
        logger=logger,
    )

    logger.info("Services wired for a new session context.")

    return ServiceContainer(
        error_handler=error_handler,
        profile_repository=profile_repo,
        profile_sync=profile_sync,
        session_store=store,
        session_manager=session_manager,
        rate_limiter=rate_limiter,
        auth_service=auth_service,
        session_context=session_context,
    )


__all__ = [
    "ServiceContainer",
    "create_services",
]
