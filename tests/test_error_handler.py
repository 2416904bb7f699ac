from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError
from supabase_auth.errors import AuthApiError, AuthRetryableError

from authgate.models.auth_models import USER_MESSAGES, AuthErrorCode
from authgate.services.error_handler import (
    NETWORK_RETRY_AFTER_S,
    NetworkFault,
    ProviderFault,
    UnknownFault,
    ErrorHandler,
    normalize_fault,
)


class StatusError(Exception):
    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


# ---------------------------------------------------------------------------
# normalize_fault
# ---------------------------------------------------------------------------

def test_transport_errors_normalize_to_network():
    assert isinstance(normalize_fault(httpx.ConnectError("refused")), NetworkFault)
    assert isinstance(normalize_fault(TimeoutError()), NetworkFault)


def test_retryable_provider_error_without_status_is_network():
    fault = normalize_fault(AuthRetryableError("upstream unreachable", 0))
    assert isinstance(fault, NetworkFault)


def test_message_pattern_marks_network():
    assert isinstance(normalize_fault(RuntimeError("TypeError: fetch failed")), NetworkFault)


def test_provider_and_store_errors_keep_their_source():
    auth_fault = normalize_fault(AuthApiError("Invalid login credentials", 400, "invalid_credentials"))
    assert isinstance(auth_fault, ProviderFault)
    assert auth_fault.source == "auth"
    assert auth_fault.status == 400

    store_fault = normalize_fault(APIError({"code": "42P01", "message": "relation missing"}))
    assert isinstance(store_fault, ProviderFault)
    assert store_fault.source == "store"
    assert store_fault.code == "42P01"


def test_everything_else_is_unknown():
    fault = normalize_fault(ValueError("weird"))
    assert isinstance(fault, UnknownFault)
    assert fault.exception_type == "ValueError"


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------

def test_network_error_is_retryable_after_three_seconds(error_handler):
    error = error_handler.classify(httpx.ConnectError("connection refused"))
    assert error.code == AuthErrorCode.NETWORK_ERROR
    assert error.retryable is True
    assert error.retry_after == NETWORK_RETRY_AFTER_S


@pytest.mark.parametrize(
    ("message", "code", "expected"),
    [
        ("Invalid login credentials", "invalid_credentials", AuthErrorCode.INVALID_CREDENTIALS),
        ("Email not confirmed", "email_not_confirmed", AuthErrorCode.EMAIL_NOT_VERIFIED),
        ("User already registered", "user_already_exists", AuthErrorCode.EMAIL_ALREADY_EXISTS),
        ("Password should be at least 6 characters", "weak_password", AuthErrorCode.WEAK_PASSWORD),
        ("Invalid Refresh Token: Refresh Token Not Found", "refresh_token_not_found",
         AuthErrorCode.SESSION_EXPIRED),
    ],
)
def test_provider_messages_map_through_rule_table(error_handler, message, code, expected):
    error = error_handler.classify(AuthApiError(message, 400, code))
    assert error.code == expected
    assert error.retryable is False


def test_rate_limit_rule_sets_retry_after(error_handler):
    error = error_handler.classify(
        AuthApiError("Email rate limit exceeded", 429, "over_email_send_rate_limit"),
    )
    assert error.code == AuthErrorCode.RATE_LIMIT_EXCEEDED
    assert error.retryable is True
    assert error.retry_after == 60.0


def test_bare_429_status_is_rate_limit(error_handler):
    error = error_handler.classify(StatusError("slow down", 429))
    assert error.code == AuthErrorCode.RATE_LIMIT_EXCEEDED
    assert error.retry_after == 60.0


def test_server_errors_are_service_unavailable(error_handler):
    error = error_handler.classify(StatusError("bad gateway", 502))
    assert error.code == AuthErrorCode.SERVICE_UNAVAILABLE
    assert error.retryable is True
    assert error.retry_after == 5.0


def test_unmatched_store_error_is_database_error(error_handler):
    error = error_handler.classify(APIError({"code": "42P01", "message": "relation does not exist"}))
    assert error.code == AuthErrorCode.DATABASE_ERROR
    assert error.retryable is True
    assert error.metadata["provider_code"] == "42P01"


def test_unknown_exception_is_not_retryable(error_handler):
    error = error_handler.classify(ValueError("weird"))
    assert error.code == AuthErrorCode.UNKNOWN_ERROR
    assert error.retryable is False
    assert error.metadata["exception_type"] == "ValueError"


def test_classified_error_passes_through(error_handler):
    original = error_handler.create_error(AuthErrorCode.INVALID_EMAIL)
    assert error_handler.classify(original) is original


def test_user_message_never_leaks_provider_text(error_handler):
    error = error_handler.classify(AuthApiError("Invalid login credentials", 400, "invalid_credentials"))
    assert error.message == "Invalid login credentials"
    assert error.user_message == USER_MESSAGES[AuthErrorCode.INVALID_CREDENTIALS]


# ---------------------------------------------------------------------------
# create_error / is_retryable / log
# ---------------------------------------------------------------------------

def test_create_error_defaults_retryable_from_code(error_handler):
    assert error_handler.create_error(AuthErrorCode.DATABASE_ERROR).retryable is True
    assert error_handler.create_error(AuthErrorCode.INVALID_EMAIL).retryable is False
    assert error_handler.create_error(AuthErrorCode.INVALID_EMAIL, retryable=True).retryable is True


def test_is_retryable_honours_code_set(error_handler):
    error = error_handler.create_error(AuthErrorCode.NETWORK_ERROR, retryable=False)
    assert ErrorHandler.is_retryable(error) is True


def test_error_metadata_is_a_copy(error_handler):
    error = error_handler.create_error(AuthErrorCode.UNKNOWN_ERROR, metadata={"a": 1})
    error.metadata["a"] = 2
    assert error.metadata["a"] == 1


def test_log_is_silent_outside_development():
    logger = MagicMock()
    handler = ErrorHandler(logger=logger, is_development=False)
    handler.log(handler.create_error(AuthErrorCode.UNKNOWN_ERROR), "ctx")
    logger.warning.assert_not_called()


def test_log_never_raises():
    logger = MagicMock()
    logger.warning.side_effect = RuntimeError("handler broken")
    handler = ErrorHandler(logger=logger, is_development=True)
    handler.log(handler.create_error(AuthErrorCode.UNKNOWN_ERROR), "ctx")
