from __future__ import annotations

import io
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from authgate.logger import StructuredLogger
from authgate.services.auth_service import AuthService
from authgate.services.error_handler import ErrorHandler
from authgate.services.profile_sync import ProfileSyncService
from authgate.services.rate_limiter import SignupRateLimiter
from authgate.services.session_manager import SessionManager

from fakes import (
    FakeClock,
    FakeMonotonic,
    FakeProfileRepository,
    MemorySessionStore,
    RecordingSleep,
)

RESET_REDIRECT = "http://localhost:3000/auth/reset-password/confirm"
VERIFICATION_REDIRECT = "http://localhost:3000/auth/callback"


@pytest.fixture
def logger():
    return StructuredLogger(name="authgate.tests", stream=io.StringIO(), to_file=False)


@pytest.fixture
def error_handler(logger):
    return ErrorHandler(logger=logger, is_development=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def provider_auth():
    """Supabase auth client double; every method is awaitable."""
    auth = AsyncMock()
    auth.get_session.return_value = None
    auth.set_session.return_value = None
    auth.sign_out.return_value = None
    return auth


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def repo():
    return FakeProfileRepository()


@pytest.fixture
def session_manager(provider_auth, store, error_handler, logger, clock, sleep):
    manager = SessionManager(
        auth=provider_auth,
        store=store,
        error_handler=error_handler,
        logger=logger,
        clock=clock,
        sleep=sleep,
    )
    yield manager
    manager.shutdown()


@pytest.fixture
def profile_sync(repo, provider_auth, error_handler, logger, clock, sleep):
    return ProfileSyncService(
        repo=repo,
        auth=provider_auth,
        error_handler=error_handler,
        logger=logger,
        clock=clock,
        sleep=sleep,
    )


@pytest.fixture
def rate_limiter(logger, monotonic):
    return SignupRateLimiter(logger=logger, cooldown_s=5.0, clock=monotonic)


@pytest.fixture
def stack(
    provider_auth, store, repo, error_handler, logger, clock, monotonic, sleep,
    session_manager, profile_sync, rate_limiter,
):
    """A fully wired ``AuthService`` over in-memory doubles."""
    service = AuthService(
        auth=provider_auth,
        session_manager=session_manager,
        profile_sync=profile_sync,
        rate_limiter=rate_limiter,
        error_handler=error_handler,
        logger=logger,
        reset_redirect=RESET_REDIRECT,
        verification_redirect=VERIFICATION_REDIRECT,
    )
    return SimpleNamespace(
        auth=provider_auth,
        store=store,
        repo=repo,
        errors=error_handler,
        logger=logger,
        clock=clock,
        monotonic=monotonic,
        sleep=sleep,
        manager=session_manager,
        profile_sync=profile_sync,
        limiter=rate_limiter,
        service=service,
    )
