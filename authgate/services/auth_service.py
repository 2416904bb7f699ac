"""
Authentication Service.

Orchestrates the identity provider, ``SessionManager`` and
``ProfileSyncService`` into the user-facing auth operations.

Propagation policy:
    - ``sign_up`` / ``sign_in`` return ``SignUpResult`` / ``SignInResult``
      and never raise for expected failures.
    - ``sign_out`` never raises; the local signed-out state is guaranteed.
    - ``get_current_user`` swallows errors after logging and returns
      ``None``.
    - Every other operation raises a classified ``AuthError``.

Client-side validation always runs before any network call.
"""

from __future__ import annotations

import re
from typing import Mapping, Optional, Union

from pydantic import ValidationError
from supabase_auth import AsyncGoTrueClient

from authgate.logger import StructuredLogger
from authgate.models.auth_models import (
    AuthError,
    AuthErrorCode,
    Session,
    SignInResult,
    SignUpParams,
    SignUpResult,
    ValidationResult,
)
from authgate.models.enums import UserRole
from authgate.models.user import IdentityUser, ProfileMetadata, ProfileUpdate, UserProfile
from authgate.services.base_service import BaseService
from authgate.services.error_handler import ErrorHandler
from authgate.services.profile_sync import ProfileSyncService
from authgate.services.rate_limiter import SignupRateLimiter
from authgate.services.session_manager import SessionManager

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH: int = 8


def is_valid_email(email: str) -> bool:
    return bool(email) and _EMAIL_RE.match(email.strip()) is not None


class AuthService(BaseService):
    """High-level authentication operations.

    Parameters
    ----------
    auth:
        The provider's auth client (``AsyncClient.auth``).
    session_manager:
        Token lifecycle owner for this context.
    profile_sync:
        Profile table orchestration.
    rate_limiter:
        Per-email sign-up cooldown.
    error_handler:
        Classifies provider faults.
    logger:
        Injected structured logger.
    reset_redirect:
        Absolute URL the password-reset email links to.
    verification_redirect:
        Absolute URL the verification email links to.
    """

    def __init__(
        self,
        auth: AsyncGoTrueClient,
        session_manager: SessionManager,
        profile_sync: ProfileSyncService,
        rate_limiter: SignupRateLimiter,
        error_handler: ErrorHandler,
        logger: StructuredLogger,
        reset_redirect: str,
        verification_redirect: str,
    ) -> None:
        super().__init__(logger)
        self._auth = auth
        self._sessions = session_manager
        self._profiles = profile_sync
        self._rate_limiter = rate_limiter
        self._errors = error_handler
        self._reset_redirect: str = reset_redirect
        self._verification_redirect: str = verification_redirect

    # ==================================================================
    # Validation
    # ==================================================================

    def validate_sign_up(self, params: SignUpParams) -> ValidationResult:
        """Check sign-up input; the first failed rule wins."""
        if not is_valid_email(params.email):
            return ValidationResult(
                is_valid=False,
                error_code=AuthErrorCode.INVALID_EMAIL,
                error_message="Invalid email format",
            )
        if len(params.password) < MIN_PASSWORD_LENGTH:
            return ValidationResult(
                is_valid=False,
                error_code=AuthErrorCode.WEAK_PASSWORD,
                error_message="Password too short",
            )
        if not params.name or not params.name.strip():
            return ValidationResult(
                is_valid=False,
                error_code=AuthErrorCode.MISSING_FIELDS,
                error_message="Name is required",
            )
        if params.role not in {role.value for role in UserRole}:
            return ValidationResult(
                is_valid=False,
                error_code=AuthErrorCode.INVALID_ROLE,
                error_message=f"Invalid role: {params.role!r}",
            )
        return ValidationResult(is_valid=True)

    def _require_email(self, email: str) -> str:
        if not is_valid_email(email):
            raise self._errors.create_error(
                AuthErrorCode.INVALID_EMAIL, "Invalid email format", retryable=False,
            )
        return email.strip()

    # ==================================================================
    # Sign-up
    # ==================================================================

    async def sign_up(self, params: SignUpParams) -> SignUpResult:
        """Register a new identity.

        Flow: validate, cooldown check (recording the attempt), provider
        sign-up, then either stop for email verification or adopt the
        session and create the profile.
        """
        validation = self.validate_sign_up(params)
        if not validation.is_valid:
            return SignUpResult(
                success=False,
                error=self._errors.create_error(
                    validation.error_code or AuthErrorCode.MISSING_FIELDS,
                    validation.error_message,
                    retryable=False,
                ),
            )

        wait: float = self._rate_limiter.try_acquire(params.email)
        if wait > 0:
            return SignUpResult(
                success=False,
                error=self._errors.create_error(
                    AuthErrorCode.SIGNUP_COOLDOWN,
                    "Sign-up cooldown active",
                    retryable=True,
                    retry_after=wait,
                ),
            )

        email: str = params.email.strip()
        name: str = params.name.strip()
        try:
            response = await self._auth.sign_up({
                "email": email,
                "password": params.password,
                "options": {
                    "data": {"name": name, "role": params.role},
                    "email_redirect_to": self._verification_redirect,
                },
            })
        except Exception as exc:
            return SignUpResult(success=False, error=self._errors.handle(exc, "sign_up"))

        if response is None or response.user is None:
            return SignUpResult(
                success=False,
                error=self._errors.create_error(
                    AuthErrorCode.UNKNOWN_ERROR,
                    "Sign-up succeeded but no user was returned",
                    retryable=True,
                ),
            )

        identity = IdentityUser.from_provider(response.user)
        if response.session is None or not identity.is_confirmed:
            self._log_event(
                "SIGN_UP", "Sign-up for %s awaits email verification", identity.id,
                needs_verification=True,
            )
            return SignUpResult(success=True, needs_verification=True)

        self._sessions.adopt_session(Session.from_provider(response.session, identity.id))
        metadata = ProfileMetadata(name=name, role=UserRole(params.role))
        try:
            profile = await self._profiles.retry_profile_creation(identity, metadata)
        except AuthError as exc:
            self._errors.log(exc, "sign_up.profile_creation")
            return SignUpResult(success=True, needs_verification=False, error=exc)

        self._log_event(
            "SIGN_UP", "Sign-up completed for %s", identity.id,
            needs_verification=False,
        )
        return SignUpResult(success=True, needs_verification=False, user=profile)

    # ==================================================================
    # Sign-in / sign-out
    # ==================================================================

    async def sign_in(self, email: str, password: str) -> SignInResult:
        """Authenticate with email and password and resolve the profile.

        A missing profile is created from the provider's metadata; an
        existing one is synced.
        """
        if not email or not email.strip() or not password:
            return SignInResult(
                success=False,
                error=self._errors.create_error(
                    AuthErrorCode.MISSING_FIELDS,
                    "Email and password are required",
                    retryable=False,
                ),
            )

        try:
            response = await self._auth.sign_in_with_password({
                "email": email.strip(),
                "password": password,
            })
        except Exception as exc:
            return SignInResult(success=False, error=self._errors.handle(exc, "sign_in"))

        if response is None or response.user is None or response.session is None:
            return SignInResult(
                success=False,
                error=self._errors.create_error(
                    AuthErrorCode.UNKNOWN_ERROR,
                    "Sign-in succeeded but no user or session was returned",
                    retryable=True,
                ),
            )

        identity = IdentityUser.from_provider(response.user)
        self._sessions.adopt_session(Session.from_provider(response.session, identity.id))

        try:
            profile = await self._profiles.get_profile(identity.id)
            if profile is None:
                profile = await self._profiles.retry_profile_creation(
                    identity, ProfileMetadata.from_identity(identity),
                )
            else:
                profile = await self._profiles.sync_profile(identity.id)
        except AuthError as exc:
            self._errors.log(exc, "sign_in.profile")
            return SignInResult(success=False, error=exc)

        self._log_event(
            "SIGN_IN", "User signed in: %s", identity.id, user_id=identity.id,
        )
        return SignInResult(success=True, user=profile)

    async def sign_out(self) -> None:
        """End the session.  Never raises."""
        try:
            await self._sessions.clear_session()
        except Exception as exc:
            self._errors.handle(exc, "sign_out")
        self._log_event("SIGN_OUT", "User signed out.")

    # ==================================================================
    # Current user / profile
    # ==================================================================

    async def get_current_user(self) -> Optional[UserProfile]:
        """Profile for the current valid session, or ``None``.

        Errors are classified and logged, never raised.
        """
        try:
            session = await self._sessions.get_session()
            if session is None:
                return None
            return await self._profiles.get_profile(session.user_id)
        except Exception as exc:
            self._errors.handle(exc, "get_current_user")
            return None

    async def update_profile(
        self,
        user_id: str,
        updates: Union[ProfileUpdate, Mapping[str, object]],
    ) -> UserProfile:
        """Update the caller's own profile.

        Only ``name`` and ``email`` are editable.

        Raises
        ------
        AuthError
            ``SESSION_EXPIRED`` when there is no valid session for
            *user_id*; validation codes for bad input;
            ``PROFILE_UPDATE_FAILED`` when the write fails.
        """
        try:
            if isinstance(updates, ProfileUpdate):
                update = updates
            else:
                update = ProfileUpdate(**dict(updates))
        except (ValidationError, TypeError) as exc:
            raise self._errors.create_error(
                AuthErrorCode.PROFILE_UPDATE_FAILED,
                f"Unsupported profile update: {exc}",
                retryable=False,
                metadata={"user_id": user_id},
            ) from exc

        if update.email is not None and not is_valid_email(update.email):
            raise self._errors.create_error(
                AuthErrorCode.INVALID_EMAIL, "Invalid email format", retryable=False,
            )
        if update.name is not None and not update.name.strip():
            raise self._errors.create_error(
                AuthErrorCode.MISSING_FIELDS, "Name must not be empty", retryable=False,
            )

        session = await self._sessions.get_session()
        if session is None or session.user_id != user_id:
            error = self._errors.create_error(
                AuthErrorCode.SESSION_EXPIRED,
                "Invalid session for profile update",
                retryable=False,
                metadata={"user_id": user_id},
            )
            self._errors.log(error, "update_profile")
            raise error

        try:
            return await self._profiles.update_profile(user_id, update)
        except AuthError as exc:
            self._errors.log(exc, "update_profile")
            raise

    # ==================================================================
    # Password reset
    # ==================================================================

    async def request_password_reset(self, email: str) -> None:
        """Ask the provider to email a reset link.

        The provider does not reveal whether *email* is registered.
        """
        address = self._require_email(email)
        try:
            await self._auth.reset_password_for_email(
                address, {"redirect_to": self._reset_redirect},
            )
        except Exception as exc:
            raise self._errors.handle(exc, "request_password_reset") from exc
        self._log_event("PASSWORD_RESET_REQUESTED", "Password reset requested.")

    def _token_error(
        self,
        exc: Exception,
        invalid_code: AuthErrorCode,
        expired_code: AuthErrorCode,
        context: str,
    ) -> AuthError:
        """Classify *exc*, mapping token-shaped failures to *invalid_code*
        or *expired_code*."""
        error = self._errors.classify(exc)
        lowered = error.message.lower()
        if error.code == AuthErrorCode.SESSION_EXPIRED or "expired" in lowered:
            error = self._errors.create_error(
                expired_code, error.message, retryable=False, metadata=error.metadata,
            )
        elif error.code == AuthErrorCode.INVALID_TOKEN or ("invalid" in lowered and "token" in lowered):
            error = self._errors.create_error(
                invalid_code, error.message, retryable=False, metadata=error.metadata,
            )
        self._errors.log(error, context)
        return error

    async def reset_password(self, token: str, new_password: str) -> None:
        """Commit *new_password* under the emailed recovery *token*.

        On success the local session is always cleared, forcing a fresh
        sign-in.  On failure the local session is left untouched.
        """
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise self._errors.create_error(
                AuthErrorCode.WEAK_PASSWORD, "Password too short", retryable=False,
            )
        if not token or not token.strip():
            raise self._errors.create_error(
                AuthErrorCode.INVALID_RESET_TOKEN, "No reset token provided", retryable=False,
            )

        try:
            await self._auth.verify_otp({"type": "recovery", "token_hash": token.strip()})
        except Exception as exc:
            raise self._token_error(
                exc,
                AuthErrorCode.INVALID_RESET_TOKEN,
                AuthErrorCode.RESET_TOKEN_EXPIRED,
                "reset_password.verify",
            ) from exc

        try:
            await self._auth.update_user({"password": new_password})
        except Exception as exc:
            await self._reinstate_provider_session()
            raise self._token_error(
                exc,
                AuthErrorCode.INVALID_RESET_TOKEN,
                AuthErrorCode.RESET_TOKEN_EXPIRED,
                "reset_password.update",
            ) from exc

        await self._sessions.clear_session()
        self._log_event("PASSWORD_RESET", "Password reset completed.")

    async def _reinstate_provider_session(self) -> None:
        """Hand the still-current session back to the provider client after
        a failed reset replaced it with the recovery session."""
        current = self._sessions.current_session
        if current is None or not self._sessions.is_session_valid(current):
            return
        try:
            await self._auth.set_session(current.access_token, current.refresh_token)
        except Exception as exc:
            self._errors.handle(exc, "reset_password.reinstate")

    # ==================================================================
    # Email verification
    # ==================================================================

    async def resend_verification_email(self, email: str) -> None:
        """Ask the provider to resend the sign-up verification email."""
        address = self._require_email(email)
        try:
            await self._auth.resend({
                "type": "signup",
                "email": address,
                "options": {"email_redirect_to": self._verification_redirect},
            })
        except Exception as exc:
            raise self._errors.handle(exc, "resend_verification_email") from exc
        self._logger.info(
            "Verification email resent.", extra={"event": "VERIFICATION_RESENT"},
        )

    async def complete_email_verification(self, token: str) -> UserProfile:
        """Confirm the emailed *token*, adopt the session and make sure a
        profile exists.

        ``verification_status`` is never changed here.
        """
        if not token or not token.strip():
            raise self._errors.create_error(
                AuthErrorCode.INVALID_VERIFICATION_TOKEN,
                "No verification token provided",
                retryable=False,
            )

        try:
            response = await self._auth.verify_otp({"type": "email", "token_hash": token.strip()})
        except Exception as exc:
            raise self._token_error(
                exc,
                AuthErrorCode.INVALID_VERIFICATION_TOKEN,
                AuthErrorCode.VERIFICATION_TOKEN_EXPIRED,
                "complete_email_verification",
            ) from exc

        if response is None or response.user is None or response.session is None:
            error = self._errors.create_error(
                AuthErrorCode.SESSION_EXPIRED,
                "No session returned after email verification",
                retryable=False,
            )
            self._errors.log(error, "complete_email_verification")
            raise error

        identity = IdentityUser.from_provider(response.user)
        self._sessions.adopt_session(Session.from_provider(response.session, identity.id))

        try:
            profile = await self._profiles.get_profile(identity.id)
            if profile is None:
                profile = await self._profiles.retry_profile_creation(
                    identity, ProfileMetadata.from_identity(identity),
                )
        except AuthError as exc:
            self._errors.log(exc, "complete_email_verification.profile")
            raise

        self._logger.info(
            "Email verified for %s", identity.id,
            extra={"event": "EMAIL_VERIFIED", "user_id": identity.id},
        )
        return profile
