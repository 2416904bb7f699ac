"""
Sign-up Rate Limiter.

Per-identity cooldown between sign-up attempts.  State is owned by the
limiter instance (one per ``AuthService``) and never shared across
contexts.  Entries older than the cooldown are swept on every access, so
the map never grows beyond the identities seen in the last window.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from authgate.logger import StructuredLogger
from authgate.models.auth_models import SignupAttemptRecord, SignupAttemptStore


def normalize_identity(email: str) -> str:
    return email.strip().lower()


class SignupRateLimiter:
    """Enforces a cooldown between sign-up attempts for the same email.

    ``try_acquire`` checks and records in one synchronous step, so
    concurrent coroutines cannot both pass for the same identity.

    Parameters
    ----------
    logger:
        Injected structured logger.
    cooldown_s:
        Minimum seconds between two attempts for one identity.
    clock:
        Monotonic time source in seconds.
    """

    def __init__(
        self,
        logger: StructuredLogger,
        cooldown_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._cooldown: float = cooldown_s
        self._clock = clock
        self._store: SignupAttemptStore = SignupAttemptStore()

    @property
    def cooldown_s(self) -> float:
        return self._cooldown

    def __len__(self) -> int:
        return len(self._store.entries)

    def sweep(self) -> int:
        """Drop records whose cooldown has elapsed; returns how many."""
        now = self._clock()
        expired = [
            key for key, record in self._store.entries.items()
            if now - record.attempted_at >= self._cooldown
        ]
        for key in expired:
            del self._store.entries[key]
        return len(expired)

    def remaining(self, email: str) -> float:
        """Seconds until *email* may attempt again (``0.0`` when allowed)."""
        self.sweep()
        record: Optional[SignupAttemptRecord] = self._store.entries.get(normalize_identity(email))
        if record is None:
            return 0.0
        return max(self._cooldown - (self._clock() - record.attempted_at), 0.0)

    def record_attempt(self, email: str) -> None:
        self._store.entries[normalize_identity(email)] = SignupAttemptRecord(
            attempted_at=self._clock(),
        )

    def try_acquire(self, email: str) -> float:
        """Record an attempt for *email* unless it is cooling down.

        Returns ``0.0`` when the attempt was recorded, otherwise the
        remaining cooldown in seconds (always ``> 0``).
        """
        wait: float = self.remaining(email)
        if wait > 0:
            self._logger.warning(
                "Sign-up cooldown active for %s (%.2fs remaining)",
                normalize_identity(email),
                wait,
                extra={"event": "SIGNUP_COOLDOWN"},
            )
            return wait
        self.record_attempt(email)
        return 0.0
