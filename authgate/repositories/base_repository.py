"""
Base Repository.

Provides shared infrastructure for all repositories:
- DatabaseManager reference
- Logger reference
- Convenience property for the Supabase client
- Table-name resolution (overridable per deployment)
"""

from __future__ import annotations

from typing import Optional

from supabase import AsyncClient

from authgate.database import DatabaseManager
from authgate.logger import StructuredLogger


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        table: Optional[str] = None,
    ) -> None:
        self._db = db
        self._logger = logger
        self._table: str = table or self.TABLE

    @property
    def supabase(self) -> AsyncClient:
        """Returns the Supabase client for cloud operations."""
        return self._db.supabase

    @property
    def table_name(self) -> str:
        return self._table
