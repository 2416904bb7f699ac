"""
Shared Enumerations for authgate Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents,
so rows read from the profile table (``role == "seller"``) match directly.
"""

from __future__ import annotations
from enum import StrEnum


class UserRole(StrEnum):
    """Roles a profile may hold.

    The role is chosen at sign-up and stored on the profile row.  It is
    never changed by this package.
    """

    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class VerificationStatus(StrEnum):
    """Moderation state of a profile.

    Set once at creation (``PENDING`` for sellers, ``UNVERIFIED`` for
    everyone else).  ``APPROVED`` and ``REJECTED`` are written only by the
    external moderation workflow; this package reads them but never
    advances them.
    """

    UNVERIFIED = "unverified"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def initial_for(cls, role: UserRole) -> "VerificationStatus":
        """Return the status a brand-new profile with *role* starts in."""
        return cls.PENDING if role == UserRole.SELLER else cls.UNVERIFIED
