"""
Base Service Class.

Every authgate service owns a ``StructuredLogger``; lifecycle events are
tagged with an ``event`` name so the JSON log can be filtered by
transition (``SIGN_IN``, ``SESSION_CLEARED``, ...).
"""

from __future__ import annotations

import logging

from authgate.logger import StructuredLogger


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    def _log_event(
        self,
        event: str,
        msg: str,
        *args: object,
        level: int = logging.INFO,
        **fields: object,
    ) -> None:
        """Log *msg* with ``event`` and any extra *fields* in the JSON payload."""
        self._logger.event(event, msg, *args, level=level, **fields)
