"""
Profile Repository.

Handles all access to the profile table (``users`` by default) through the
Supabase PostgREST client.  Store faults propagate as
``postgrest.exceptions.APIError``; classification is the caller's job.
"""

from __future__ import annotations

from typing import Any, Optional

from postgrest.exceptions import APIError

from authgate.database import DatabaseManager
from authgate.logger import StructuredLogger
from authgate.models.user import UserProfile
from authgate.repositories.base_repository import BaseRepository

UNIQUE_VIOLATION: str = "23505"
"""PostgreSQL SQLSTATE for a primary-key / unique constraint violation."""

# Older PostgREST clients signal "no row" from maybe_single() as an
# APIError carrying this code instead of an empty response.
_NO_CONTENT: str = "204"


class ProfileRepository(BaseRepository):
    """Data access layer for ``UserProfile`` rows.

    **No ``delete()`` method.**  Profiles live as long as the identity
    they belong to; removal is an administrative concern outside this
    package.
    """

    TABLE = "users"

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        table: Optional[str] = None,
    ) -> None:
        super().__init__(db, logger, table)

    @staticmethod
    def _first(data: Any) -> Optional[dict[str, Any]]:
        if isinstance(data, list):
            return data[0] if data else None
        if isinstance(data, dict):
            return data or None
        return None

    async def get_by_id(self, user_id: str) -> Optional[UserProfile]:
        """Fetch a profile by primary key, or ``None`` when absent."""
        try:
            response = await (
                self.supabase.table(self._table)
                .select("*")
                .eq("id", user_id)
                .maybe_single()
                .execute()
            )
        except APIError as exc:
            if str(exc.code) == _NO_CONTENT:
                return None
            raise
        if response is None:
            return None
        row = self._first(response.data)
        return UserProfile(**row) if row else None

    async def insert(self, profile: UserProfile) -> UserProfile:
        """Insert a new row.

        Raises
        ------
        postgrest.exceptions.APIError
            With code ``23505`` when a row with the same id already exists.
        """
        response = await (
            self.supabase.table(self._table)
            .insert(profile.model_dump(mode="json", exclude_none=True))
            .execute()
        )
        row = self._first(response.data)
        self._logger.info("Profile inserted: %s", profile.id)
        return UserProfile(**row) if row else profile

    async def upsert_ignore_duplicates(self, profile: UserProfile) -> Optional[UserProfile]:
        """Insert unless a row with the same id exists.

        Returns the inserted row, or ``None`` when the insert was skipped
        because of a conflict.
        """
        response = await (
            self.supabase.table(self._table)
            .upsert(
                profile.model_dump(mode="json", exclude_none=True),
                on_conflict="id",
                ignore_duplicates=True,
            )
            .execute()
        )
        row = self._first(response.data)
        return UserProfile(**row) if row else None

    async def update(self, user_id: str, patch: dict[str, Any]) -> Optional[UserProfile]:
        """Apply *patch* to the row with *user_id*.

        Returns the updated row, or ``None`` if no row matched.
        """
        response = await (
            self.supabase.table(self._table)
            .update(patch)
            .eq("id", user_id)
            .execute()
        )
        row = self._first(response.data)
        if row is None:
            return None
        self._logger.info("Profile updated: %s (%s)", user_id, ", ".join(sorted(patch)))
        return UserProfile(**row)
