"""
Data Models Package.

Re-exports all Pydantic models for short imports:
    from authgate.models import UserProfile, UserRole, VerificationStatus
    from authgate.models import AuthError, AuthErrorCode, Session
"""

from authgate.models.enums import UserRole, VerificationStatus
from authgate.models.user import (
    IdentityUser,
    ProfileMetadata,
    ProfileUpdate,
    UserProfile,
)
from authgate.models.auth_models import (
    AuthError,
    AuthErrorCode,
    AuthErrorDetail,
    PersistedSession,
    Session,
    SignInResult,
    SignUpParams,
    SignUpResult,
    SignupAttemptRecord,
    SignupAttemptStore,
    ValidationResult,
)

__all__ = [
    "UserRole",
    "VerificationStatus",
    "IdentityUser",
    "ProfileMetadata",
    "ProfileUpdate",
    "UserProfile",
    "AuthError",
    "AuthErrorCode",
    "AuthErrorDetail",
    "PersistedSession",
    "Session",
    "SignInResult",
    "SignUpParams",
    "SignUpResult",
    "SignupAttemptRecord",
    "SignupAttemptStore",
    "ValidationResult",
]
