"""
Session Persistence Backends.

A ``SessionStore`` is a durable slot holding exactly one
``PersistedSession`` snapshot.  ``SessionManager`` depends only on the
``load`` / ``save`` / ``clear`` capability; the backend is chosen at the
composition root.

Backends
--------
``FileSessionStore``
    JSON file.  Written atomically (temp file + replace) and restricted to
    owner-only permissions when ``secure`` is set.
``EncryptedSessionStore``
    AES-256-GCM blob in the local SQLite ``encrypted_sessions`` table
    (single row, ``id = 1``).  The key is derived at runtime from machine
    identity (hostname + OS username) and a per-machine random salt via
    PBKDF2-HMAC-SHA256; it is never written to disk.

Both backends enforce the snapshot's outer ``store_expires_at``: an
expired slot is purged and reported as empty.
"""

from __future__ import annotations

import getpass
import json
import os
import socket
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2
from pydantic import ValidationError

from authgate.database import DatabaseManager
from authgate.logger import StructuredLogger
from authgate.models.auth_models import PersistedSession


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore(Protocol):
    """Capability for a single persisted session slot."""

    def load(self) -> Optional[PersistedSession]:
        ...

    def save(self, snapshot: PersistedSession) -> bool:
        ...

    def clear(self) -> None:
        ...


# ---------------------------------------------------------------------------
# File backend
# ---------------------------------------------------------------------------

class FileSessionStore:
    """Stores the snapshot as a JSON document at *path*.

    Parameters
    ----------
    path:
        Location of the JSON file.  Parent directories are created on
        first save.
    logger:
        A ``StructuredLogger`` instance.
    secure:
        Restrict the file to owner read/write (``0o600``).
    clock:
        Returns the current aware UTC time for the outer-expiry check.
    """

    def __init__(
        self,
        path: Path,
        logger: StructuredLogger,
        secure: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._path: Path = Path(path)
        self._logger: StructuredLogger = logger
        self._secure: bool = secure
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[PersistedSession]:
        if not self._path.exists():
            return None
        try:
            raw: str = self._path.read_text(encoding="utf-8")
            snapshot = PersistedSession.model_validate_json(raw)
        except (OSError, ValueError, ValidationError) as exc:
            self._logger.warning(
                "Persisted session at %s is unreadable: %s", self._path, exc,
            )
            self.clear()
            return None

        if snapshot.store_expires_at <= self._clock():
            self._logger.info(
                "Persisted session slot expired at %s; purging.",
                snapshot.store_expires_at.isoformat(),
            )
            self.clear()
            return None
        return snapshot

    def save(self, snapshot: PersistedSession) -> bool:
        """Write *snapshot*; returns ``False`` (after logging) on I/O failure."""
        payload: str = snapshot.model_dump_json()
        tmp_path: Path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            if self._secure:
                tmp_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600
            os.replace(tmp_path, self._path)
            return True
        except OSError as exc:
            self._logger.warning(
                "Failed to persist session to %s: %s", self._path, exc,
            )
            return False

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            self._logger.error(
                "Failed to remove persisted session %s: %s", self._path, exc,
            )


# ---------------------------------------------------------------------------
# Encrypted SQLite backend
# ---------------------------------------------------------------------------

class EncryptedSessionStore:
    """Stores the snapshot AES-256-GCM encrypted in local SQLite.

    This store accesses SQLite directly rather than through a repository:
    the persisted session is infrastructure state, not domain data.

    Parameters
    ----------
    db:
        ``DatabaseManager`` built with a SQLite path (the
        ``encrypted_sessions`` table is created by ``initialize_schema``).
    logger:
        A ``StructuredLogger`` instance.
    salt_path:
        Location of the per-machine random salt.  Defaults to
        ``~/.authgate_session_salt``.
    iterations:
        PBKDF2 iteration count.
        The key is derived at construction so that ``load`` and ``save``
        never pay for PBKDF2 on the caller's event loop; build the store
        off the loop (``asyncio.to_thread``) when the count is high.
    clock:
        Returns the current aware UTC time for the outer-expiry check.
    """

    _PBKDF2_ITERATIONS: int = 600_000
    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_LENGTH: int = 32

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        salt_path: Optional[Path] = None,
        iterations: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db: DatabaseManager = db
        self._logger: StructuredLogger = logger
        self._salt_path: Path = salt_path or Path.home() / ".authgate_session_salt"
        self._iterations: int = iterations or self._PBKDF2_ITERATIONS
        self._clock = clock
        self._key: Optional[bytes] = None
        try:
            self._derive_key()
        except OSError as exc:
            self._logger.warning(
                "Session key derivation deferred; salt unavailable: %s", exc,
            )

    def load(self) -> Optional[PersistedSession]:
        try:
            row = self._db.sqlite.execute(
                "SELECT encrypted_payload, nonce, tag FROM encrypted_sessions WHERE id = 1",
            ).fetchone()
        except Exception as exc:
            self._logger.warning(
                "Failed to read persisted session from database: %s", exc,
            )
            return None

        if row is None:
            return None

        try:
            cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=row["nonce"])
            plaintext: bytes = cipher.decrypt_and_verify(row["encrypted_payload"], row["tag"])
        except (ValueError, KeyError, OSError) as exc:
            self._logger.warning(
                "Decryption of persisted session failed (corrupted data or "
                "machine identity changed): %s",
                exc,
            )
            self.clear()
            return None

        try:
            snapshot = PersistedSession.model_validate_json(plaintext)
        except ValidationError as exc:
            self._logger.warning("Persisted session payload is malformed: %s", exc)
            self.clear()
            return None

        if snapshot.store_expires_at <= self._clock():
            self._logger.info("Persisted session slot expired; purging.")
            self.clear()
            return None
        return snapshot

    def save(self, snapshot: PersistedSession) -> bool:
        plaintext: bytes = snapshot.model_dump_json().encode("utf-8")
        try:
            cipher = AES.new(self._derive_key(), AES.MODE_GCM)
            ciphertext, tag = cipher.encrypt_and_digest(plaintext)
            nonce: bytes = cipher.nonce
        except (ValueError, OSError) as exc:
            self._logger.warning("Failed to encrypt session payload: %s", exc)
            return False

        try:
            with self._db.write_lock:
                self._db.sqlite.execute(
                    """
                    INSERT INTO encrypted_sessions (id, encrypted_payload, nonce, tag)
                    VALUES (1, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        encrypted_payload = excluded.encrypted_payload,
                        nonce             = excluded.nonce,
                        tag               = excluded.tag,
                        created_at        = CURRENT_TIMESTAMP
                    """,
                    (ciphertext, nonce, tag),
                )
                self._db.sqlite.commit()
            return True
        except Exception as exc:
            self._logger.warning(
                "Failed to write encrypted session to database: %s", exc,
            )
            return False

    def clear(self) -> None:
        try:
            with self._db.write_lock:
                self._db.sqlite.execute("DELETE FROM encrypted_sessions WHERE id = 1")
                self._db.sqlite.commit()
        except Exception as exc:
            self._logger.error("Failed to clear persisted session: %s", exc)

    # ------------------------------------------------------------------
    # Key derivation
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive (once per instance) the 256-bit AES key.

        Raises
        ------
        OSError
            If the per-machine salt file cannot be created or read.
        """
        if self._key is None:
            password: str = f"{socket.gethostname()}:{getpass.getuser()}"
            self._key = PBKDF2(
                password=password,
                salt=self._get_or_create_salt(),
                dkLen=self._KEY_LENGTH,
                count=self._iterations,
                hmac_hash_module=SHA256,
            )
        return self._key

    def _get_or_create_salt(self) -> bytes:
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == self._SALT_LENGTH:
                return data
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.", len(data),
            )
        salt: bytes = os.urandom(self._SALT_LENGTH)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)
        self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600
        self._logger.info("Per-machine session salt created at %s.", self._salt_path)
        return salt


def build_session_store(
    backend: str,
    *,
    path: Path,
    db: Optional[DatabaseManager],
    logger: StructuredLogger,
    secure: bool,
    salt_path: Optional[Path] = None,
    iterations: Optional[int] = None,
) -> SessionStore:
    """Return the configured backend.

    Raises
    ------
    ValueError
        For an unknown backend name, or ``encrypted`` without a database.
    """
    if backend == "file":
        return FileSessionStore(path, logger, secure=secure)
    if backend == "encrypted":
        if db is None:
            raise ValueError("The encrypted session store requires a DatabaseManager.")
        return EncryptedSessionStore(db, logger, salt_path=salt_path, iterations=iterations)
    raise ValueError(f"Unknown session store backend: {backend!r}")
