"""
Session Manager.

Owns the token lifecycle for one client context:

- **Validity**: a session is usable while its access token is present and
  it expires at least ``validity_buffer_s`` (30 s) from now.
- **Refresh**: concurrent ``refresh_session`` calls share one in-flight
  task.  A successful refresh is adopted, persisted and re-armed.
- **Auto-refresh**: a one-shot timer fires ``refresh_margin_s`` (5 min)
  before expiry and runs its own retry ladder (1 s, 2 s, 4 s), separate
  from the shared on-demand refresh.  When every attempt fails the
  session is cleared.
- **Clear**: local state is invalidated first and unconditionally; the
  provider revocation is best-effort.  Concurrent clears share one
  in-flight revocation.
- **Generation guard**: every clear (and every newly adopted session)
  bumps ``generation``.  A refresh that completes under an older
  generation is discarded: not adopted, not persisted, no timer armed,
  and the provider client is re-pointed at the current session.
- **Restore**: the persisted snapshot is consulted at most once per
  instance.  A valid snapshot is handed back to the provider client; an
  expired one with a refresh token gets a single refresh attempt.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from supabase_auth import AsyncGoTrueClient

from authgate.logger import StructuredLogger
from authgate.models.auth_models import AuthError, AuthErrorCode, PersistedSession, Session
from authgate.services.base_service import BaseService
from authgate.services.error_handler import ErrorHandler
from authgate.services.session_store import SessionStore
from authgate.utils.retry import RetryPolicy, SleepFn, retry_async

DEFAULT_AUTO_REFRESH_POLICY = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=4.0, jitter=0.0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager(BaseService):
    """Token lifecycle, refresh and persistence for one client context.

    Parameters
    ----------
    auth:
        The provider's auth client (``AsyncClient.auth``).
    store:
        Durable slot for the session snapshot.
    error_handler:
        Classifies provider faults.
    logger:
        Injected structured logger.
    validity_buffer_s:
        Minimum remaining lifetime for a session to count as valid.
    refresh_margin_s:
        How long before expiry the auto-refresh timer fires.
    store_max_age_days:
        Outer expiry of the persisted slot.
    snapshot_max_bytes:
        Upper bound on the encoded snapshot; larger snapshots are not
        persisted.
    auto_refresh_policy:
        Retry ladder used when the auto-refresh timer fires.
    clock:
        Returns the current aware UTC time.
    sleep:
        Awaitable sleep used between auto-refresh attempts.
    """

    def __init__(
        self,
        auth: AsyncGoTrueClient,
        store: SessionStore,
        error_handler: ErrorHandler,
        logger: StructuredLogger,
        *,
        validity_buffer_s: float = 30.0,
        refresh_margin_s: float = 300.0,
        store_max_age_days: int = 30,
        snapshot_max_bytes: int = 4096,
        auto_refresh_policy: RetryPolicy = DEFAULT_AUTO_REFRESH_POLICY,
        clock: Callable[[], datetime] = _utcnow,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        super().__init__(logger)
        self._auth = auth
        self._store = store
        self._errors = error_handler
        self._validity_buffer = timedelta(seconds=validity_buffer_s)
        self._refresh_margin = timedelta(seconds=refresh_margin_s)
        self._store_max_age = timedelta(days=store_max_age_days)
        self._snapshot_max_bytes: int = snapshot_max_bytes
        self._auto_refresh_policy: RetryPolicy = auto_refresh_policy
        self._clock = clock
        self._sleep = sleep

        self._session: Optional[Session] = None
        self._generation: int = 0
        self._closed: bool = False

        self._refresh_task: Optional[asyncio.Task[Session]] = None
        self._clear_task: Optional[asyncio.Task[None]] = None
        self._restore_task: Optional[asyncio.Task[Optional[Session]]] = None
        self._bootstrap_task: Optional[asyncio.Task[None]] = None
        self._bootstrapped: bool = False

        self._timer: Optional[asyncio.TimerHandle] = None
        self._next_refresh_at: Optional[datetime] = None
        self._auto_refresh_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current_session(self) -> Optional[Session]:
        """In-memory session without validity checks or provider calls."""
        return self._session

    @property
    def auto_refresh_armed(self) -> bool:
        return self._timer is not None

    @property
    def next_refresh_at(self) -> Optional[datetime]:
        return self._next_refresh_at if self._timer is not None else None

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def is_session_valid(self, session: Optional[Session]) -> bool:
        """``True`` when *session* has an access token and at least
        ``validity_buffer_s`` of remaining lifetime."""
        if session is None or not session.access_token:
            return False
        return session.expires_at >= self._clock() + self._validity_buffer

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_session(self) -> Optional[Session]:
        """Return the current valid session, or ``None``.

        The first call restores from persistence and, failing that, from
        the provider client.  An expired in-memory session with a refresh
        token is refreshed on demand.  Never raises.
        """
        await self._ensure_bootstrapped()

        session = self._session
        if session is None:
            return None
        if self.is_session_valid(session):
            return session
        if not session.refresh_token:
            return None
        try:
            return await self.refresh_session()
        except AuthError as exc:
            self._errors.log(exc, "SessionManager.get_session")
            return None

    async def _ensure_bootstrapped(self) -> None:
        if self._bootstrapped:
            return
        if self._bootstrap_task is None:
            self._bootstrap_task = asyncio.create_task(self._bootstrap())
        await asyncio.shield(self._bootstrap_task)

    async def _bootstrap(self) -> None:
        try:
            generation = self._generation
            restored = await self.restore_from_persistence()
            if restored is None and generation == self._generation:
                await self._adopt_provider_session(generation)
        finally:
            self._bootstrapped = True

    async def _adopt_provider_session(self, generation: int) -> None:
        """Fall through to whatever session the provider client holds."""
        try:
            provider_session = await self._auth.get_session()
        except Exception as exc:
            self._errors.log(self._errors.classify(exc), "SessionManager.get_session")
            return
        if provider_session is None or provider_session.user is None:
            return
        session = Session.from_provider(provider_session, str(provider_session.user.id))
        if generation != self._generation or self._closed or not self.is_session_valid(session):
            return
        self._install(session)

    # ------------------------------------------------------------------
    # Adopt / persist
    # ------------------------------------------------------------------

    def adopt_session(self, session: Session) -> None:
        """Install a freshly issued session.

        Supersedes any in-flight refresh of the previous session, persists
        the new one and arms auto-refresh.  Ignored once the manager is shut
        down: a sign-in that lands after teardown must not be persisted.
        """
        if self._closed:
            self._logger.info(
                "Ignoring session issued after shutdown.",
                extra={"event": "SESSION_ADOPT_AFTER_SHUTDOWN"},
            )
            return
        self._generation += 1
        self._bootstrapped = True
        self._install(session)
        self._logger.info(
            "Session adopted for user %s", session.user_id,
            extra={"event": "SESSION_ADOPTED", "user_id": session.user_id},
        )

    def _install(self, session: Session) -> None:
        self._session = session
        self.persist(session)
        self.schedule_auto_refresh(session)

    def persist(self, session: Session) -> bool:
        """Write a bounded snapshot of *session* with a 30-day outer expiry.

        Invalid sessions and oversized snapshots are skipped.  Returns
        whether the snapshot was written.
        """
        if not self.is_session_valid(session):
            self._logger.debug("Skipping persistence of an invalid session.")
            return False

        now = self._clock()
        snapshot = PersistedSession(
            session=session,
            persisted_at=now,
            store_expires_at=now + self._store_max_age,
        )
        size: int = len(snapshot.model_dump_json().encode("utf-8"))
        if size > self._snapshot_max_bytes:
            self._logger.warning(
                "Session snapshot is %d bytes (limit %d); not persisted.",
                size,
                self._snapshot_max_bytes,
                extra={"event": "SESSION_PERSIST_SKIPPED"},
            )
            return False
        return self._store.save(snapshot)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_session(self, refresh_token: Optional[str] = None) -> Session:
        """Exchange the refresh token for a new session.

        Concurrent callers share one in-flight provider call.

        Raises
        ------
        AuthError
            ``TOKEN_REFRESH_FAILED`` (non-retryable) when the provider
            rejects the refresh; ``SESSION_EXPIRED`` when the session was
            cleared or replaced while the refresh was in flight.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(
                self._perform_refresh(self._generation, refresh_token),
            )
        return await asyncio.shield(self._refresh_task)

    async def _perform_refresh(self, generation: int, refresh_token: Optional[str]) -> Session:
        token: Optional[str] = refresh_token
        if token is None and self._session is not None:
            token = self._session.refresh_token or None

        try:
            response = await self._auth.refresh_session(token)
        except Exception as exc:
            cause = self._errors.classify(exc)
            error = self._errors.create_error(
                AuthErrorCode.TOKEN_REFRESH_FAILED,
                cause.message,
                retryable=False,
                metadata={"cause": cause.code.value},
            )
            self._errors.log(error, "SessionManager.refresh_session")
            raise error from exc

        if response is None or response.session is None or response.user is None:
            raise self._errors.create_error(
                AuthErrorCode.TOKEN_REFRESH_FAILED,
                "Refresh returned no session",
                retryable=False,
            )

        session = Session.from_provider(response.session, str(response.user.id))

        if generation != self._generation or self._closed:
            self._logger.info(
                "Discarding refresh result completed after the session was "
                "cleared or replaced.",
                extra={"event": "SESSION_REFRESH_DISCARDED"},
            )
            if not self._closed:
                await self._resync_provider()
            raise self._errors.create_error(
                AuthErrorCode.SESSION_EXPIRED,
                "Session was cleared while a refresh was in flight",
                retryable=False,
            )

        self._install(session)
        self._logger.info(
            "Session refreshed for user %s", session.user_id,
            extra={"event": "SESSION_REFRESHED", "user_id": session.user_id},
        )
        return session

    async def _resync_provider(self) -> None:
        """Undo the provider client's copy of a discarded refresh.

        The provider stores refreshed tokens internally.  When signed out
        they are dropped with a local sign-out; when a newer session was
        adopted meanwhile, that session is handed back to the client.
        """
        current = self._session
        try:
            if current is None:
                await self._auth.sign_out({"scope": "local"})
            else:
                await self._auth.set_session(current.access_token, current.refresh_token)
        except Exception as exc:
            self._errors.log(self._errors.classify(exc), "SessionManager.discard_refresh")

    # ------------------------------------------------------------------
    # Auto-refresh
    # ------------------------------------------------------------------

    def schedule_auto_refresh(self, session: Session) -> None:
        """Arm a one-shot timer ``refresh_margin_s`` before *session* expires.

        Any previously armed timer is cancelled.  Nothing is armed when the
        refresh point is already in the past or the manager is closed.
        """
        self._cancel_timer()
        if self._closed or not session.access_token:
            return

        fire_at: datetime = session.expires_at - self._refresh_margin
        delay: float = (fire_at - self._clock()).total_seconds()
        if delay <= 0:
            return

        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_timer_fired, self._generation)
        self._next_refresh_at = fire_at

    def _on_timer_fired(self, generation: int) -> None:
        self._timer = None
        self._next_refresh_at = None
        if generation != self._generation or self._closed:
            return
        self._auto_refresh_task = asyncio.get_running_loop().create_task(
            self._run_auto_refresh(generation),
        )

    async def _run_auto_refresh(self, generation: int) -> None:
        """Refresh with the auto-refresh ladder; clear when it is exhausted."""

        def _on_retry(attempt: int, exc: Exception, delay: float) -> None:
            self._logger.warning(
                "Auto-refresh attempt %d failed (%s); retrying in %.1fs",
                attempt,
                exc,
                delay,
                extra={"event": "AUTO_REFRESH_RETRY"},
            )

        try:
            await retry_async(
                lambda: self._perform_refresh(generation, None),
                self._auto_refresh_policy,
                should_retry=lambda exc: generation == self._generation and not self._closed,
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except AuthError as exc:
            if generation != self._generation or self._closed:
                return
            self._logger.error(
                "Auto-refresh failed after %d attempts; clearing session.",
                self._auto_refresh_policy.max_retries + 1,
                extra={"event": "AUTO_REFRESH_EXHAUSTED", "error_code": exc.code.value},
            )
            await self.clear_session()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._next_refresh_at = None

    def _cancel_auto_refresh_task(self) -> None:
        task = self._auto_refresh_task
        self._auto_refresh_task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    # ------------------------------------------------------------------
    # Clear
    # ------------------------------------------------------------------

    async def clear_session(self) -> None:
        """Invalidate the session locally, then revoke it at the provider.

        Local invalidation (timers, memory, persisted snapshot) happens
        before the first suspension point and cannot fail.  Revocation
        errors are logged and swallowed.  Concurrent calls share one
        in-flight revocation.
        """
        if self._clear_task is not None and not self._clear_task.done():
            await asyncio.shield(self._clear_task)
            return

        had_session: bool = self._session is not None
        self._invalidate_locally()
        self._clear_task = asyncio.create_task(self._revoke())
        await asyncio.shield(self._clear_task)
        self._logger.info(
            "Session cleared.",
            extra={"event": "SESSION_CLEARED", "had_session": had_session},
        )

    def _invalidate_locally(self) -> None:
        self._generation += 1
        self._bootstrapped = True
        self._cancel_timer()
        self._cancel_auto_refresh_task()
        self._session = None
        self._store.clear()

    async def _revoke(self) -> None:
        try:
            await self._auth.sign_out()
        except Exception as exc:
            self._errors.log(self._errors.classify(exc), "SessionManager.clear_session")

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore_from_persistence(self) -> Optional[Session]:
        """Restore the persisted snapshot, at most once per instance.

        Concurrent first callers share the result; later calls return
        ``None`` without touching the store.  Never raises.
        """
        if self._restore_task is None:
            self._restore_task = asyncio.create_task(self._restore())
        elif self._restore_task.done():
            return None
        return await asyncio.shield(self._restore_task)

    async def _restore(self) -> Optional[Session]:
        generation = self._generation
        snapshot = self._store.load()
        if snapshot is None:
            return None

        session = snapshot.session
        if self.is_session_valid(session):
            try:
                await self._auth.set_session(session.access_token, session.refresh_token)
            except Exception as exc:
                self._errors.log(self._errors.classify(exc), "SessionManager.restore")
                if generation == self._generation:
                    self._store.clear()
                return None
            if generation != self._generation or self._closed:
                return None
            self._session = session
            self.schedule_auto_refresh(session)
            self._logger.info(
                "Session restored from persistence for user %s", session.user_id,
                extra={"event": "SESSION_RESTORED", "user_id": session.user_id},
            )
            return session

        if session.refresh_token:
            try:
                return await self.refresh_session(session.refresh_token)
            except AuthError as exc:
                self._errors.log(exc, "SessionManager.restore")

        if generation == self._generation:
            self._store.clear()
        return None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Stop timers and background refresh without touching the
        provider or persistence."""
        self._closed = True
        self._cancel_timer()
        self._cancel_auto_refresh_task()
