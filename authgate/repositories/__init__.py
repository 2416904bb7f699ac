"""
Repository Layer Package.

Provides data-access abstractions over the Supabase profile table.
Services never touch ``db.supabase.table(...)`` directly.

Usage:
    from authgate.repositories.profile_repository import ProfileRepository
"""

from authgate.repositories.base_repository import BaseRepository
from authgate.repositories.profile_repository import ProfileRepository, UNIQUE_VIOLATION

__all__ = [
    "BaseRepository",
    "ProfileRepository",
    "UNIQUE_VIOLATION",
]
