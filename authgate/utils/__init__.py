"""Shared utilities for the authgate package.

Convenience re-exports so consumers can import directly from
``authgate.utils`` (e.g. ``from authgate.utils import retry_async``).
"""

from authgate.utils.audit import AuditEvent, log_audit_event
from authgate.utils.retry import RetryPolicy, backoff_delay, retry_async

__all__ = [
    "AuditEvent",
    "RetryPolicy",
    "backoff_delay",
    "log_audit_event",
    "retry_async",
]
