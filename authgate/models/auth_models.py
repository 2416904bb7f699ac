"""
Authentication Pipeline Models.

Pydantic models and enumerations for the auth request/response
contracts between ``AuthService``, ``SessionManager`` and the
``SessionContext`` façade.

Every auth operation either returns a structured, inspectable result
or raises an ``AuthError``; raw provider exceptions never cross the
service boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import NamedTuple, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from authgate.models.enums import UserRole
from authgate.models.user import UserProfile


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class AuthErrorCode(StrEnum):
    """Closed set of authentication error categories."""

    # Credentials / identity
    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    ACCOUNT_LOCKED = "account_locked"
    USER_BANNED = "user_banned"
    EMAIL_ALREADY_EXISTS = "email_already_exists"

    # Transport
    NETWORK_ERROR = "network_error"
    SERVICE_UNAVAILABLE = "service_unavailable"

    # Rate limiting
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SIGNUP_COOLDOWN = "signup_cooldown"

    # Validation
    INVALID_EMAIL = "invalid_email"
    WEAK_PASSWORD = "weak_password"
    MISSING_FIELDS = "missing_fields"
    INVALID_ROLE = "invalid_role"

    # Session / token
    SESSION_EXPIRED = "session_expired"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    INVALID_TOKEN = "invalid_token"

    # Profile store
    PROFILE_CREATION_FAILED = "profile_creation_failed"
    PROFILE_UPDATE_FAILED = "profile_update_failed"
    DATABASE_ERROR = "database_error"

    # Password reset
    INVALID_RESET_TOKEN = "invalid_reset_token"
    RESET_TOKEN_EXPIRED = "reset_token_expired"

    # Email verification
    INVALID_VERIFICATION_TOKEN = "invalid_verification_token"
    VERIFICATION_TOKEN_EXPIRED = "verification_token_expired"

    # Generic
    UNKNOWN_ERROR = "unknown_error"
    INTERNAL_ERROR = "internal_error"


RETRYABLE_CODES: frozenset[AuthErrorCode] = frozenset({
    AuthErrorCode.NETWORK_ERROR,
    AuthErrorCode.SERVICE_UNAVAILABLE,
    AuthErrorCode.TOKEN_REFRESH_FAILED,
    AuthErrorCode.DATABASE_ERROR,
    AuthErrorCode.PROFILE_CREATION_FAILED,
    AuthErrorCode.PROFILE_UPDATE_FAILED,
    AuthErrorCode.INTERNAL_ERROR,
})
"""Codes treated as retryable even when an error's own flag says otherwise."""


USER_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.INVALID_CREDENTIALS: (
        "Invalid email or password. Please check your credentials and try again."
    ),
    AuthErrorCode.EMAIL_NOT_VERIFIED: (
        "Please verify your email address before signing in. "
        "Check your inbox for a verification link."
    ),
    AuthErrorCode.ACCOUNT_LOCKED: (
        "Your account has been temporarily locked. "
        "Please try again later or contact support."
    ),
    AuthErrorCode.USER_BANNED: (
        "Your account has been deactivated. Please contact support."
    ),
    AuthErrorCode.EMAIL_ALREADY_EXISTS: (
        "An account with this email already exists. Try signing in instead."
    ),
    AuthErrorCode.NETWORK_ERROR: (
        "Connection problem. Please check your internet connection and try again."
    ),
    AuthErrorCode.SERVICE_UNAVAILABLE: (
        "The service is temporarily unavailable. Please try again in a few minutes."
    ),
    AuthErrorCode.RATE_LIMIT_EXCEEDED: (
        "Too many attempts. Please wait before trying again."
    ),
    AuthErrorCode.SIGNUP_COOLDOWN: (
        "Please wait a moment before creating another account."
    ),
    AuthErrorCode.INVALID_EMAIL: "Please enter a valid email address.",
    AuthErrorCode.WEAK_PASSWORD: (
        "Your password must be at least 8 characters long."
    ),
    AuthErrorCode.MISSING_FIELDS: "Please fill in all required fields.",
    AuthErrorCode.INVALID_ROLE: "Please select a valid account type.",
    AuthErrorCode.SESSION_EXPIRED: "Your session has expired. Please sign in again.",
    AuthErrorCode.TOKEN_REFRESH_FAILED: (
        "We could not keep you signed in. Please sign in again."
    ),
    AuthErrorCode.INVALID_TOKEN: (
        "Your sign-in is no longer valid. Please sign in again."
    ),
    AuthErrorCode.PROFILE_CREATION_FAILED: (
        "Your account was created but your profile could not be set up. "
        "Please try signing in."
    ),
    AuthErrorCode.PROFILE_UPDATE_FAILED: (
        "We could not update your profile. Please try again."
    ),
    AuthErrorCode.DATABASE_ERROR: (
        "We could not load your information. Please try again later."
    ),
    AuthErrorCode.INVALID_RESET_TOKEN: (
        "This password reset link is invalid or has already been used. "
        "Please request a new one."
    ),
    AuthErrorCode.RESET_TOKEN_EXPIRED: (
        "This password reset link has expired. Please request a new one."
    ),
    AuthErrorCode.INVALID_VERIFICATION_TOKEN: (
        "This verification link is invalid. "
        "Please check your email for the correct link."
    ),
    AuthErrorCode.VERIFICATION_TOKEN_EXPIRED: (
        "This verification link has expired. Please request a new one."
    ),
    AuthErrorCode.UNKNOWN_ERROR: "Something went wrong. Please try again.",
    AuthErrorCode.INTERNAL_ERROR: (
        "Something went wrong on our side. Please try again later."
    ),
}


# ---------------------------------------------------------------------------
# Provider error-message mapping
# ---------------------------------------------------------------------------

class ProviderErrorRule(NamedTuple):
    """One row of the provider classification table.

    ``patterns`` are matched case-insensitively against the provider's
    error code and message.
    """

    patterns: tuple[str, ...]
    code: AuthErrorCode
    retryable: bool = False
    retry_after: Optional[float] = None


# Order matters: the first matching rule wins.
PROVIDER_ERROR_RULES: tuple[ProviderErrorRule, ...] = (
    ProviderErrorRule(
        ("invalid login credentials", "invalid_credentials", "invalid_grant"),
        AuthErrorCode.INVALID_CREDENTIALS,
    ),
    ProviderErrorRule(
        ("email not confirmed", "email_not_confirmed"),
        AuthErrorCode.EMAIL_NOT_VERIFIED,
    ),
    ProviderErrorRule(
        ("user_banned", "user is banned"),
        AuthErrorCode.USER_BANNED,
    ),
    ProviderErrorRule(
        ("user already registered", "user_already_exists", "email_exists"),
        AuthErrorCode.EMAIL_ALREADY_EXISTS,
    ),
    ProviderErrorRule(
        ("too many requests", "rate limit", "over_request_rate_limit",
         "over_email_send_rate_limit"),
        AuthErrorCode.RATE_LIMIT_EXCEEDED,
        retryable=True,
        retry_after=60.0,
    ),
    ProviderErrorRule(
        ("invalid email", "email_address_invalid", "unable to validate email"),
        AuthErrorCode.INVALID_EMAIL,
    ),
    ProviderErrorRule(
        ("password should be at least", "weak_password"),
        AuthErrorCode.WEAK_PASSWORD,
    ),
    ProviderErrorRule(
        ("jwt expired", "otp_expired", "token has expired",
         "refresh_token_not_found", "session_not_found", "auth session missing"),
        AuthErrorCode.SESSION_EXPIRED,
    ),
    ProviderErrorRule(
        ("invalid token", "bad_jwt", "invalid jwt", "otp_disabled",
         "invalid refresh token"),
        AuthErrorCode.INVALID_TOKEN,
    ),
)

RATE_LIMIT_STATUS: int = 429


# ---------------------------------------------------------------------------
# Canonical error value
# ---------------------------------------------------------------------------

class AuthErrorDetail(BaseModel):
    """Frozen payload carried by every ``AuthError``."""

    code: AuthErrorCode
    message: str
    user_message: str
    retryable: bool = False
    retry_after: Optional[float] = None
    metadata: dict[str, object] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class AuthError(Exception):
    """Canonical, classified authentication error.

    Construct through ``ErrorHandler.create_error`` or
    ``ErrorHandler.classify``; the fields are read-only once built.
    ``retry_after`` is expressed in seconds.
    """

    def __init__(self, detail: AuthErrorDetail) -> None:
        super().__init__(detail.message)
        self._detail: AuthErrorDetail = detail

    @property
    def detail(self) -> AuthErrorDetail:
        return self._detail

    @property
    def code(self) -> AuthErrorCode:
        return self._detail.code

    @property
    def message(self) -> str:
        return self._detail.message

    @property
    def user_message(self) -> str:
        return self._detail.user_message

    @property
    def retryable(self) -> bool:
        return self._detail.retryable

    @property
    def retry_after(self) -> Optional[float]:
        return self._detail.retry_after

    @property
    def metadata(self) -> dict[str, object]:
        return dict(self._detail.metadata)

    def __repr__(self) -> str:
        return f"AuthError(code={self.code.value!r}, retryable={self.retryable})"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class ProviderSessionLike(Protocol):
    """Attributes read from a Supabase Auth ``Session`` object."""

    access_token: str
    refresh_token: str
    expires_at: Optional[int]
    token_type: str


class Session(BaseModel):
    """Access/refresh token pair for one authenticated identity."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"
    user_id: str

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_provider(
        cls,
        session: ProviderSessionLike,
        user_id: str,
    ) -> "Session":
        expires_at: datetime = datetime.fromtimestamp(
            int(session.expires_at or 0), tz=timezone.utc,
        )
        return cls(
            access_token=session.access_token or "",
            refresh_token=session.refresh_token or "",
            expires_at=expires_at,
            token_type=session.token_type or "bearer",
            user_id=user_id,
        )


class PersistedSession(BaseModel):
    """Snapshot written to durable client storage.

    ``store_expires_at`` is the outer expiry of the stored slot itself
    (30 days by default) and is independent of the token's own
    ``session.expires_at``.
    """

    session: Session
    persisted_at: datetime
    store_expires_at: datetime


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a client-side validation pass.

    Attributes
    ----------
    is_valid:
        ``True`` when every rule passed.
    error_code:
        The code of the first failed rule, or ``None`` on success.
    error_message:
        Diagnostic description of the failure (never shown to users).
    """

    is_valid: bool
    error_code: Optional[AuthErrorCode] = None
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Operation parameters and results
# ---------------------------------------------------------------------------

class SignUpParams(BaseModel):
    """Raw sign-up form input.

    ``role`` stays a plain string so that invalid values reach
    ``AuthService`` validation instead of failing model construction.
    """

    email: str
    password: str
    name: str
    role: str = UserRole.BUYER.value


class SignUpResult(BaseModel):
    """Outcome of ``AuthService.sign_up``.

    ``success`` with ``needs_verification`` means the provider accepted
    the account but no profile exists yet.  ``success`` with an ``error``
    means the account exists but profile creation failed.
    """

    success: bool
    needs_verification: bool = False
    user: Optional[UserProfile] = None
    error: Optional[AuthError] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class SignInResult(BaseModel):
    """Outcome of ``AuthService.sign_in``."""

    success: bool
    user: Optional[UserProfile] = None
    error: Optional[AuthError] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


# ---------------------------------------------------------------------------
# Rate-limit models
# ---------------------------------------------------------------------------

class SignupAttemptRecord(BaseModel):
    """Last sign-up attempt for one normalised identity key.

    ``attempted_at`` is a reading of the limiter's monotonic clock.
    """

    attempted_at: float


class SignupAttemptStore(BaseModel):
    """Container for all live sign-up attempt records, keyed by email."""

    entries: dict[str, SignupAttemptRecord] = Field(default_factory=dict)
