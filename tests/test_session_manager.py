from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from authgate.models.auth_models import AuthError, AuthErrorCode, PersistedSession
from authgate.services.session_manager import SessionManager

from fakes import (
    MemorySessionStore,
    auth_response,
    make_session,
    provider_session,
    provider_user,
    wait_for,
)


def _refresh_response(clock, access_token="access-2", refresh_token="refresh-2"):
    user = provider_user()
    return auth_response(
        user,
        provider_session(clock, user, access_token=access_token, refresh_token=refresh_token),
    )


# ---------------------------------------------------------------------------
# Validity
# ---------------------------------------------------------------------------

def test_validity_buffer_boundary(session_manager, clock):
    assert session_manager.is_session_valid(make_session(clock, lifetime_s=29)) is False
    assert session_manager.is_session_valid(make_session(clock, lifetime_s=30)) is True
    assert session_manager.is_session_valid(make_session(clock, lifetime_s=31)) is True


def test_session_without_access_token_is_invalid(session_manager, clock):
    assert session_manager.is_session_valid(make_session(clock, access_token="")) is False
    assert session_manager.is_session_valid(None) is False


# ---------------------------------------------------------------------------
# Adopt / persist
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_adopt_persists_and_arms_auto_refresh(session_manager, store, clock):
    session = make_session(clock, lifetime_s=3600)
    session_manager.adopt_session(session)

    assert await session_manager.get_session() == session
    assert len(store.saved) == 1
    assert store.saved[0].store_expires_at == clock() + timedelta(days=30)
    assert session_manager.auto_refresh_armed is True
    assert session_manager.next_refresh_at == session.expires_at - timedelta(seconds=300)


@pytest.mark.asyncio
async def test_no_timer_when_refresh_point_already_passed(session_manager, clock):
    session_manager.adopt_session(make_session(clock, lifetime_s=200))
    assert session_manager.auto_refresh_armed is False


@pytest.mark.asyncio
async def test_oversized_snapshot_is_not_persisted(provider_auth, error_handler, logger, clock):
    store = MemorySessionStore()
    manager = SessionManager(
        provider_auth, store, error_handler, logger, snapshot_max_bytes=64, clock=clock,
    )
    manager.adopt_session(make_session(clock))
    assert store.saved == []
    manager.shutdown()


def test_invalid_session_is_not_persisted(session_manager, store, clock):
    assert session_manager.persist(make_session(clock, lifetime_s=10)) is False
    assert store.saved == []


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_provider_call(session_manager, provider_auth, clock):
    session_manager.adopt_session(make_session(clock))

    async def slow_refresh(token):
        await asyncio.sleep(0)
        return _refresh_response(clock)

    provider_auth.refresh_session.side_effect = slow_refresh
    first, second = await asyncio.gather(
        session_manager.refresh_session(),
        session_manager.refresh_session(),
    )
    assert first is second
    assert first.access_token == "access-2"
    provider_auth.refresh_session.assert_awaited_once_with("refresh-1")


@pytest.mark.asyncio
async def test_expired_session_is_refreshed_on_read(session_manager, provider_auth, clock):
    session_manager.adopt_session(make_session(clock, lifetime_s=3600))
    provider_auth.refresh_session.return_value = _refresh_response(clock)
    clock.advance(3590)

    session = await session_manager.get_session()
    assert session is not None
    assert session.access_token == "access-2"


@pytest.mark.asyncio
async def test_rejected_refresh_is_non_retryable(session_manager, provider_auth, clock):
    session_manager.adopt_session(make_session(clock))
    provider_auth.refresh_session.side_effect = httpx.ConnectError("connection refused")

    with pytest.raises(AuthError) as exc_info:
        await session_manager.refresh_session()
    assert exc_info.value.code == AuthErrorCode.TOKEN_REFRESH_FAILED
    assert exc_info.value.retryable is False
    assert exc_info.value.metadata["cause"] == AuthErrorCode.NETWORK_ERROR.value


@pytest.mark.asyncio
async def test_get_session_swallows_refresh_failure(session_manager, provider_auth, clock):
    session_manager.adopt_session(make_session(clock))
    provider_auth.refresh_session.side_effect = httpx.ConnectError("connection refused")
    clock.advance(3600)
    assert await session_manager.get_session() is None


@pytest.mark.asyncio
async def test_refresh_completing_after_clear_is_discarded(session_manager, provider_auth, store, clock):
    session_manager.adopt_session(make_session(clock))
    started = asyncio.Event()
    release = asyncio.Event()

    async def gated_refresh(token):
        started.set()
        await release.wait()
        return _refresh_response(clock)

    provider_auth.refresh_session.side_effect = gated_refresh
    pending = asyncio.create_task(session_manager.refresh_session())
    await started.wait()

    await session_manager.clear_session()
    release.set()

    with pytest.raises(AuthError) as exc_info:
        await pending
    assert exc_info.value.code == AuthErrorCode.SESSION_EXPIRED
    assert session_manager.current_session is None
    assert store.snapshot is None
    assert len(store.saved) == 1
    assert session_manager.auto_refresh_armed is False
    provider_auth.sign_out.assert_any_await({"scope": "local"})


@pytest.mark.asyncio
async def test_refresh_superseded_by_new_sign_in_hands_new_session_to_provider(
    session_manager, provider_auth, store, clock,
):
    session_manager.adopt_session(make_session(clock))
    started = asyncio.Event()
    release = asyncio.Event()

    async def gated_refresh(token):
        started.set()
        await release.wait()
        return _refresh_response(clock)

    provider_auth.refresh_session.side_effect = gated_refresh
    pending = asyncio.create_task(session_manager.refresh_session())
    await started.wait()

    other = make_session(clock, user_id="user-2", access_token="access-b", refresh_token="refresh-b")
    session_manager.adopt_session(other)
    release.set()

    with pytest.raises(AuthError) as exc_info:
        await pending
    assert exc_info.value.code == AuthErrorCode.SESSION_EXPIRED
    assert session_manager.current_session == other
    assert store.snapshot.session == other
    provider_auth.set_session.assert_awaited_once_with("access-b", "refresh-b")
    provider_auth.sign_out.assert_not_awaited()


# ---------------------------------------------------------------------------
# Auto-refresh
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_timer_refreshes_before_expiry(session_manager, provider_auth, clock):
    provider_auth.refresh_session.return_value = _refresh_response(clock)
    session_manager.adopt_session(make_session(clock, lifetime_s=300.02))

    await wait_for(lambda: provider_auth.refresh_session.await_count == 1)
    await wait_for(lambda: session_manager.current_session.access_token == "access-2")
    assert session_manager.auto_refresh_armed is True
    session_manager.shutdown()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_exhausted_auto_refresh_clears_session(session_manager, provider_auth, store, clock, sleep):
    provider_auth.refresh_session.side_effect = httpx.ConnectError("connection refused")
    session_manager.adopt_session(make_session(clock, lifetime_s=300.02))

    await wait_for(lambda: provider_auth.sign_out.await_count == 1)
    assert provider_auth.refresh_session.await_count == 4
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert session_manager.current_session is None
    assert store.snapshot is None


@pytest.mark.asyncio
async def test_auto_refresh_does_not_wait_on_a_pending_manual_refresh(session_manager, provider_auth, clock):
    release = asyncio.Event()
    calls = []

    async def refresh(token):
        calls.append(token)
        if len(calls) == 1:
            await release.wait()
            raise httpx.ConnectError("connection refused")
        return _refresh_response(clock)

    provider_auth.refresh_session.side_effect = refresh
    session_manager.adopt_session(make_session(clock, lifetime_s=300.02))
    manual = asyncio.create_task(session_manager.refresh_session())

    await wait_for(lambda: len(calls) == 2)
    await wait_for(lambda: session_manager.current_session.access_token == "access-2")

    release.set()
    with pytest.raises(AuthError):
        await manual
    session_manager.shutdown()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_clear_disarms_timer(session_manager, clock):
    session_manager.adopt_session(make_session(clock))
    await session_manager.clear_session()
    assert session_manager.auto_refresh_armed is False
    assert session_manager.next_refresh_at is None


# ---------------------------------------------------------------------------
# Clear
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_clears_converge(session_manager, provider_auth, store, clock):
    session_manager.adopt_session(make_session(clock))
    generation = session_manager.generation

    await asyncio.gather(*(session_manager.clear_session() for _ in range(3)))

    assert session_manager.current_session is None
    assert store.snapshot is None
    assert session_manager.generation == generation + 1
    provider_auth.sign_out.assert_awaited_once_with()


@pytest.mark.asyncio
async def test_clear_survives_provider_failure(session_manager, provider_auth, store, clock):
    session_manager.adopt_session(make_session(clock))
    provider_auth.sign_out.side_effect = httpx.ConnectError("connection refused")

    await session_manager.clear_session()
    assert session_manager.current_session is None
    assert store.snapshot is None
    assert await session_manager.get_session() is None


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------

def _persisted(session, clock):
    return PersistedSession(
        session=session,
        persisted_at=clock(),
        store_expires_at=clock() + timedelta(days=30),
    )


@pytest.mark.asyncio
async def test_valid_snapshot_is_restored(session_manager, provider_auth, store, clock):
    session = make_session(clock)
    store.snapshot = _persisted(session, clock)

    assert await session_manager.get_session() == session
    provider_auth.set_session.assert_awaited_once_with("access-1", "refresh-1")
    provider_auth.get_session.assert_not_awaited()
    assert session_manager.auto_refresh_armed is True


@pytest.mark.asyncio
async def test_expired_snapshot_gets_one_refresh(session_manager, provider_auth, store, clock):
    store.snapshot = _persisted(make_session(clock, lifetime_s=-60), clock)
    provider_auth.refresh_session.return_value = _refresh_response(clock)

    session = await session_manager.get_session()
    assert session is not None
    assert session.access_token == "access-2"
    provider_auth.refresh_session.assert_awaited_once_with("refresh-1")


@pytest.mark.asyncio
async def test_rejected_snapshot_is_cleared(session_manager, provider_auth, store, clock):
    store.snapshot = _persisted(make_session(clock), clock)
    provider_auth.set_session.side_effect = RuntimeError("Invalid Refresh Token")

    assert await session_manager.get_session() is None
    assert store.snapshot is None


@pytest.mark.asyncio
async def test_restore_runs_once(session_manager, provider_auth, store, clock):
    session = make_session(clock)
    store.snapshot = _persisted(session, clock)

    first, second = await asyncio.gather(
        session_manager.restore_from_persistence(),
        session_manager.restore_from_persistence(),
    )
    assert first == second == session
    assert await session_manager.restore_from_persistence() is None
    provider_auth.set_session.assert_awaited_once()


@pytest.mark.asyncio
async def test_falls_back_to_provider_session(session_manager, provider_auth, clock):
    user = provider_user()
    provider_auth.get_session.return_value = provider_session(clock, user)

    session = await session_manager.get_session()
    assert session is not None
    assert session.user_id == "user-1"


def test_adopt_after_shutdown_is_ignored(session_manager, store, clock):
    session_manager.shutdown()
    session_manager.adopt_session(make_session(clock))

    assert session_manager.current_session is None
    assert store.saved == []
    assert session_manager.auto_refresh_armed is False


@pytest.mark.asyncio
async def test_shutdown_stops_timers(session_manager, clock):
    session_manager.adopt_session(make_session(clock))
    session_manager.shutdown()
    assert session_manager.auto_refresh_armed is False
