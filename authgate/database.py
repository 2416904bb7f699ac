"""
Database Abstraction Layer.

Owns the two connections the session core needs:

- **Supabase (``AsyncClient``)**: the identity provider (``client.auth``)
  and the profile table (``client.table(...)``).
- **SQLite (local, optional)**: backing file for the encrypted session
  store.  Opened only when that backend is configured.

Data access is performed through repositories and the session store.
This module only manages the raw *connections*; it contains no query
logic.

Usage (dependency injection at startup)::

    from authgate.database import create_database
    from authgate.logger import StructuredLogger

    db = await create_database(config, StructuredLogger(name="authgate.db"))
    # Inject `db` into repositories / services that need it.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Optional

from supabase import AsyncClient, acreate_client

from authgate.config import AppConfig
from authgate.logger import StructuredLogger
from authgate.schema import initialize_schema


class DatabaseManager:
    """Holds the Supabase client and the optional local SQLite connection.

    Parameters
    ----------
    supabase:
        A ready ``AsyncClient``, or ``None`` when credentials are not
        configured.  Accessing :pyattr:`supabase` then raises
        ``RuntimeError``.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    sqlite_path:
        Filesystem path for the local SQLite file.  ``None`` skips the
        local database entirely.
    """

    def __init__(
        self,
        supabase: Optional[AsyncClient],
        logger: StructuredLogger,
        sqlite_path: Optional[Path] = None,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._supabase: Optional[AsyncClient] = supabase
        self._write_lock: threading.RLock = threading.RLock()
        self._sqlite_conn: Optional[sqlite3.Connection] = None
        if sqlite_path is not None:
            self._sqlite_conn = self._connect_sqlite(sqlite_path)
            initialize_schema(self._sqlite_conn, logger)

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def supabase(self) -> AsyncClient:
        """Return the Supabase client.

        Raises
        ------
        RuntimeError
            If no client was configured.
        """
        if self._supabase is None:
            raise RuntimeError(
                "Supabase client is not initialised. "
                "Set SUPABASE_URL and SUPABASE_ANON_KEY."
            )
        return self._supabase

    @property
    def is_online(self) -> bool:
        """``True`` when the Supabase client is available."""
        return self._supabase is not None

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Return the local SQLite connection.

        Raises
        ------
        RuntimeError
            If the manager was built without a SQLite path.
        """
        if self._sqlite_conn is None:
            raise RuntimeError("Local SQLite database is not configured.")
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Lock guarding SQLite writes (``execute`` followed by ``commit``)."""
        return self._write_lock

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the local SQLite connection.

        Safe to call multiple times; subsequent calls are no-ops.
        """
        with self._write_lock:
            if self._sqlite_conn is not None:
                try:
                    self._sqlite_conn.close()
                    self._logger.info("SQLite connection closed.")
                except sqlite3.ProgrammingError:
                    pass
                self._sqlite_conn = None

    def _connect_sqlite(self, path: Path) -> sqlite3.Connection:
        """Open (or create) the SQLite database at *path*.

        Raises
        ------
        PermissionError
            If the OS denies access to the database file or its directory.
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            self._logger.info("SQLite database opened at %s", path)
            return conn
        except PermissionError as exc:
            msg = (
                f"Cannot open the local database at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process."
            )
            self._logger.error(msg)
            raise PermissionError(msg) from exc


async def create_database(
    config: AppConfig,
    logger: StructuredLogger,
) -> DatabaseManager:
    """Build a ``DatabaseManager`` from *config*.

    The Supabase client is created only when both URL and key are set.
    The SQLite file is opened only for the ``encrypted`` session backend.
    """
    client: Optional[AsyncClient] = None
    key: str = config.SUPABASE_ANON_KEY.get_secret_value()
    if config.SUPABASE_URL and key:
        try:
            client = await acreate_client(config.SUPABASE_URL, key)
            logger.info("Supabase client initialized.")
        except (ValueError, TypeError) as exc:
            logger.warning("Supabase credential format error: %s.", exc)
    else:
        logger.warning("Supabase credentials not configured.")

    sqlite_path: Optional[Path] = None
    if config.SESSION_STORE_BACKEND == "encrypted":
        sqlite_path = Path(config.SESSION_STORE_DB_PATH)

    return DatabaseManager(supabase=client, logger=logger, sqlite_path=sqlite_path)
