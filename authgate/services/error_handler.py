"""
Error Handler Service.

Turns any raw fault raised by the identity provider, the profile store or
the transport into a canonical ``AuthError``.

Classification happens in two steps:

1. ``normalize_fault`` reduces the raw exception to a small tagged union
   (``NetworkFault``, ``ProviderFault``, ``UnknownFault``).
2. ``ErrorHandler.classify`` switches on that union and consults the
   provider pattern table in ``authgate.models.auth_models``.

Users only ever see the fixed ``USER_MESSAGES`` sentence for a code; raw
provider text stays in ``AuthError.message`` and ``metadata``.
"""

from __future__ import annotations

import asyncio
from typing import Literal, Mapping, Optional, Union

import httpx
from postgrest.exceptions import APIError as PostgrestAPIError
from pydantic import BaseModel, ConfigDict
from supabase_auth.errors import AuthError as ProviderAuthError
from supabase_auth.errors import AuthRetryableError

from authgate.logger import StructuredLogger
from authgate.models.auth_models import (
    PROVIDER_ERROR_RULES,
    RATE_LIMIT_STATUS,
    RETRYABLE_CODES,
    USER_MESSAGES,
    AuthError,
    AuthErrorCode,
    AuthErrorDetail,
)
from authgate.services.base_service import BaseService

NETWORK_PATTERNS: tuple[str, ...] = (
    "fetch failed",
    "network error",
    "connection",
    "timeout",
    "timed out",
    "econnrefused",
    "enotfound",
    "etimedout",
)

NETWORK_RETRY_AFTER_S: float = 3.0
SERVICE_RETRY_AFTER_S: float = 5.0


# ---------------------------------------------------------------------------
# Raw fault union
# ---------------------------------------------------------------------------

class NetworkFault(BaseModel):
    """The request never produced a provider response."""

    kind: Literal["network"] = "network"
    message: str

    model_config = ConfigDict(frozen=True)


class ProviderFault(BaseModel):
    """The identity provider or profile store answered with an error."""

    kind: Literal["provider"] = "provider"
    source: Literal["auth", "store", "http"]
    message: str
    code: Optional[str] = None
    status: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class UnknownFault(BaseModel):
    """Anything else."""

    kind: Literal["unknown"] = "unknown"
    message: str
    exception_type: str

    model_config = ConfigDict(frozen=True)


RawFault = Union[NetworkFault, ProviderFault, UnknownFault]


def _looks_like_network(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in NETWORK_PATTERNS)


def _status_of(raw: object) -> Optional[int]:
    status = getattr(raw, "status", None)
    if isinstance(status, bool):
        return None
    if isinstance(status, int):
        return status
    if isinstance(status, str) and status.isdigit():
        return int(status)
    return None


def normalize_fault(raw: object) -> RawFault:
    """Reduce an arbitrary exception (or value) to a ``RawFault``."""
    message: str = str(raw) if raw is not None else ""

    if isinstance(raw, (httpx.TransportError, ConnectionError, TimeoutError,
                        asyncio.TimeoutError)):
        return NetworkFault(message=message or type(raw).__name__)

    # The provider SDK reports transport failures as retryable errors
    # with a zero status.
    if isinstance(raw, AuthRetryableError) and not _status_of(raw):
        return NetworkFault(message=message)

    if isinstance(raw, BaseException) and _looks_like_network(message):
        return NetworkFault(message=message)

    if isinstance(raw, ProviderAuthError):
        code = getattr(raw, "code", None)
        return ProviderFault(
            source="auth",
            message=getattr(raw, "message", None) or message,
            code=str(code) if code else None,
            status=_status_of(raw),
        )

    if isinstance(raw, PostgrestAPIError):
        return ProviderFault(
            source="store",
            message=raw.message or message,
            code=str(raw.code) if raw.code else None,
            status=None,
        )

    if isinstance(raw, httpx.HTTPStatusError):
        return ProviderFault(
            source="http",
            message=message,
            status=raw.response.status_code,
        )

    status = _status_of(raw)
    if status is not None:
        code = getattr(raw, "code", None)
        return ProviderFault(
            source="http",
            message=message,
            code=str(code) if code else None,
            status=status,
        )

    return UnknownFault(message=message, exception_type=type(raw).__name__)


# ---------------------------------------------------------------------------
# ErrorHandler
# ---------------------------------------------------------------------------

class ErrorHandler(BaseService):
    """Classifies, describes and logs authentication failures.

    Parameters
    ----------
    logger:
        Injected structured logger.
    is_development:
        When ``False``, ``log`` is a no-op so that production builds do not
        write provider diagnostics to the console.
    """

    def __init__(self, logger: StructuredLogger, is_development: bool = True) -> None:
        super().__init__(logger)
        self._is_development: bool = is_development

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def create_error(
        self,
        code: AuthErrorCode,
        message: Optional[str] = None,
        *,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
        metadata: Optional[Mapping[str, object]] = None,
    ) -> AuthError:
        """Build an ``AuthError`` for *code*.

        ``retryable`` defaults to membership in the retryable code set.
        """
        return AuthError(AuthErrorDetail(
            code=code,
            message=message or code.value,
            user_message=self.user_message(code),
            retryable=(code in RETRYABLE_CODES) if retryable is None else retryable,
            retry_after=retry_after,
            metadata=dict(metadata or {}),
        ))

    def classify(self, raw: object) -> AuthError:
        """Map any raw fault to its canonical ``AuthError``.

        An ``AuthError`` passes through unchanged.
        """
        if isinstance(raw, AuthError):
            return raw

        fault: RawFault = normalize_fault(raw)

        if isinstance(fault, NetworkFault):
            return self.create_error(
                AuthErrorCode.NETWORK_ERROR,
                fault.message,
                retryable=True,
                retry_after=NETWORK_RETRY_AFTER_S,
                metadata={"fault": fault.kind},
            )

        if isinstance(fault, ProviderFault):
            return self._classify_provider(fault)

        return self.create_error(
            AuthErrorCode.UNKNOWN_ERROR,
            fault.message,
            retryable=False,
            metadata={"fault": fault.kind, "exception_type": fault.exception_type},
        )

    def _classify_provider(self, fault: ProviderFault) -> AuthError:
        metadata: dict[str, object] = {
            "fault": fault.kind,
            "source": fault.source,
            "provider_code": fault.code,
            "status": fault.status,
        }
        haystack: str = f"{fault.code or ''} {fault.message}".lower()

        for rule in PROVIDER_ERROR_RULES:
            if any(pattern in haystack for pattern in rule.patterns):
                return self.create_error(
                    rule.code,
                    fault.message,
                    retryable=rule.retryable,
                    retry_after=rule.retry_after,
                    metadata=metadata,
                )

        if fault.status == RATE_LIMIT_STATUS:
            return self.create_error(
                AuthErrorCode.RATE_LIMIT_EXCEEDED,
                fault.message,
                retryable=True,
                retry_after=60.0,
                metadata=metadata,
            )

        if fault.status is not None and fault.status >= 500:
            return self.create_error(
                AuthErrorCode.SERVICE_UNAVAILABLE,
                fault.message,
                retryable=True,
                retry_after=SERVICE_RETRY_AFTER_S,
                metadata=metadata,
            )

        if fault.source == "store":
            return self.create_error(
                AuthErrorCode.DATABASE_ERROR,
                fault.message,
                retryable=True,
                metadata=metadata,
            )

        return self.create_error(
            AuthErrorCode.UNKNOWN_ERROR,
            fault.message,
            retryable=False,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def user_message(code: AuthErrorCode) -> str:
        return USER_MESSAGES.get(code, USER_MESSAGES[AuthErrorCode.UNKNOWN_ERROR])

    @staticmethod
    def is_retryable(error: AuthError) -> bool:
        """``True`` when *error* is flagged retryable or its code always is."""
        return error.retryable or error.code in RETRYABLE_CODES

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def log(self, error: AuthError, context: str = "") -> None:
        """Emit a structured diagnostic line for *error*.

        Only active in development.  Never raises.
        """
        if not self._is_development:
            return
        try:
            self._logger.warning(
                "Auth error [%s] in %s: %s",
                error.code.value,
                context or "unknown context",
                error.message,
                extra={
                    "event": "AUTH_ERROR",
                    "error_code": error.code.value,
                    "retryable": error.retryable,
                    "context": context,
                },
            )
        except Exception:  # noqa: BLE001 - diagnostics must not break callers
            return

    def handle(self, raw: object, context: str = "") -> AuthError:
        """Classify *raw*, log it, and return the ``AuthError``."""
        error = self.classify(raw)
        self.log(error, context)
        return error
