"""
Structured JSON Logging Module.

Every line is one JSON object.  Session lifecycle transitions are tagged
with an ``event`` name (``SIGN_IN``, ``SESSION_REFRESHED``, ...) which is
promoted to a top-level key so the log can be filtered by transition;
any other ``extra`` fields are nested under ``"extra"`` with their JSON
types preserved.  Fields that could carry credentials are redacted before
they reach a handler.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, TextIO

from authgate.config import get_config

REDACTED = "[REDACTED]"
SENSITIVE_FIELDS: frozenset[str] = frozenset({
    "access_token",
    "refresh_token",
    "password",
    "new_password",
    "token",
})

_RESERVED_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """Render a record as ``{timestamp, level, logger, event?, message, extra?}``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        fields = {
            key: (REDACTED if key in SENSITIVE_FIELDS else value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        event = fields.pop("event", None)
        if event is not None:
            entry["event"] = str(event)
        entry["message"] = record.getMessage()
        if fields:
            entry["extra"] = fields

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """Injectable wrapper around a named ``logging.Logger``.

    Handlers are attached once per logger name: a console handler on
    *stream* (stdout by default) and, unless ``to_file`` is off, a rotating
    file handler sized from ``AppConfig``.  A file that cannot be opened
    degrades to console-only logging.

    Usage::

        log = StructuredLogger(name="authgate.services")
        log.event("SESSION_RESTORED", "Session restored for %s", user_id, user_id=user_id)
    """

    def __init__(
        self,
        name: str = "authgate",
        level: int = logging.INFO,
        stream: Optional[TextIO] = None,
        log_file: Optional[str] = None,
        to_file: bool = True,
    ) -> None:
        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(level)
        if self._logger.handlers:
            return

        formatter = JSONFormatter()
        self._attach(logging.StreamHandler(stream or sys.stdout), level, formatter)
        if to_file:
            handler = self._open_file_handler(log_file)
            if handler is not None:
                self._attach(handler, level, formatter)

    def _attach(self, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        self._logger.addHandler(handler)

    def _open_file_handler(self, log_file: Optional[str]) -> Optional[RotatingFileHandler]:
        cfg = get_config()
        path = Path(log_file or cfg.LOG_FILE)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return RotatingFileHandler(
                filename=str(path),
                maxBytes=cfg.LOG_MAX_BYTES,
                backupCount=cfg.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as exc:
            self._logger.warning(
                "Could not open log file '%s': %s; logging to console only.", path, exc,
            )
            return None

    @property
    def logger(self) -> logging.Logger:
        """The underlying ``logging.Logger``."""
        return self._logger

    def event(
        self,
        event: str,
        msg: str,
        *args: object,
        level: int = logging.INFO,
        **fields: object,
    ) -> None:
        """Log *msg* tagged with *event*; *fields* land under ``"extra"``."""
        self._logger.log(level, msg, *args, extra={"event": event, **fields})

    def debug(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str = "authgate") -> StructuredLogger:
    """Return a ``StructuredLogger`` for *name* with default handlers."""
    return StructuredLogger(name=name)
