from __future__ import annotations

from authgate.services.rate_limiter import normalize_identity


def test_identity_is_trimmed_and_lowercased():
    assert normalize_identity("  Ana@Example.COM ") == "ana@example.com"


def test_first_attempt_is_recorded(rate_limiter):
    assert rate_limiter.try_acquire("ana@example.com") == 0.0
    assert len(rate_limiter) == 1


def test_second_attempt_within_cooldown_reports_remaining(rate_limiter, monotonic):
    rate_limiter.try_acquire("ana@example.com")
    monotonic.advance(2.0)
    assert rate_limiter.try_acquire("ANA@example.com ") == 3.0


def test_attempt_allowed_once_cooldown_elapses(rate_limiter, monotonic):
    rate_limiter.try_acquire("ana@example.com")
    monotonic.advance(5.0)
    assert rate_limiter.remaining("ana@example.com") == 0.0
    assert rate_limiter.try_acquire("ana@example.com") == 0.0


def test_identities_are_independent(rate_limiter):
    rate_limiter.try_acquire("ana@example.com")
    assert rate_limiter.try_acquire("bo@example.com") == 0.0


def test_sweep_drops_expired_records(rate_limiter, monotonic):
    rate_limiter.try_acquire("ana@example.com")
    monotonic.advance(1.0)
    rate_limiter.try_acquire("bo@example.com")
    monotonic.advance(4.5)
    assert rate_limiter.sweep() == 1
    assert len(rate_limiter) == 1
