"""
User Profile Models.

Pydantic models for the application-level profile row (``users`` table)
and for the identity attributes the provider holds about the same user.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from authgate.models.enums import UserRole, VerificationStatus


class ProviderUserLike(Protocol):
    """Attributes read from a Supabase Auth ``User`` object."""

    id: str
    email: Optional[str]
    email_confirmed_at: Optional[datetime]
    user_metadata: Optional[dict[str, object]]


class IdentityUser(BaseModel):
    """Identity-provider view of a user.

    Decouples the services from the provider SDK's own ``User`` type so
    that only the four attributes this package relies on cross the seam.
    """

    id: str
    email: Optional[str] = None
    email_confirmed_at: Optional[datetime] = None
    user_metadata: dict[str, object] = Field(default_factory=dict)

    model_config = {"from_attributes": True}

    @classmethod
    def from_provider(cls, user: ProviderUserLike) -> "IdentityUser":
        return cls(
            id=str(user.id),
            email=user.email,
            email_confirmed_at=user.email_confirmed_at,
            user_metadata=dict(user.user_metadata or {}),
        )

    @property
    def is_confirmed(self) -> bool:
        return self.email_confirmed_at is not None


class ProfileMetadata(BaseModel):
    """Caller-supplied attributes used when a profile row is first created."""

    name: str
    role: UserRole

    @classmethod
    def from_identity(cls, identity: IdentityUser) -> "ProfileMetadata":
        """Build metadata from what the provider stored at sign-up.

        Falls back to the local part of the email and the ``buyer`` role
        for identities created outside the sign-up flow.
        """
        raw_name = identity.user_metadata.get("name")
        name: str = str(raw_name).strip() if raw_name else ""
        if not name:
            name = (identity.email or "").split("@")[0] or "User"

        raw_role = identity.user_metadata.get("role")
        try:
            role = UserRole(str(raw_role)) if raw_role else UserRole.BUYER
        except ValueError:
            role = UserRole.BUYER
        return cls(name=name, role=role)


class UserProfile(BaseModel):
    """A row of the profile table.

    ``id`` equals the identity-provider user id.  Rows are never deleted
    by this package.
    """

    id: str
    email: str
    name: str
    role: UserRole
    verification_status: VerificationStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ProfileUpdate(BaseModel):
    """Caller-editable subset of ``UserProfile``.

    ``role`` and ``verification_status`` are deliberately absent; the
    former is fixed at sign-up and the latter belongs to moderation.
    """

    name: Optional[str] = None
    email: Optional[str] = None

    model_config = {"extra": "forbid"}

    def to_patch(self) -> dict[str, str]:
        return self.model_dump(exclude_none=True)
