"""
Session Context Façade.

The only surface client code talks to.  Tracks the resolved user and the
``initializing`` / ``loading`` flags, and deduplicates concurrent calls:
every operation is keyed by ``operation:salient-argument`` and a second
call with a key already in flight awaits the first call's task instead of
starting a new one.

After ``close()`` in-flight provider calls still run to completion, but
their results are never committed to the context state.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict

from authgate.logger import StructuredLogger
from authgate.models.auth_models import (
    AuthError,
    AuthErrorCode,
    SignInResult,
    SignUpParams,
    SignUpResult,
)
from authgate.models.user import ProfileUpdate, UserProfile
from authgate.services.auth_service import AuthService
from authgate.services.base_service import BaseService
from authgate.services.error_handler import ErrorHandler
from authgate.services.rate_limiter import normalize_identity
from authgate.services.session_manager import SessionManager

T = TypeVar("T")

_UNSET: Any = object()


class SessionState(BaseModel):
    """Immutable snapshot handed to state observers."""

    user: Optional[UserProfile] = None
    initializing: bool = False
    loading: bool = False
    error: Optional[AuthError] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


StateListener = Callable[[SessionState], None]


class SessionContext(BaseService):
    """Caller-facing auth state holder for one client context.

    Parameters
    ----------
    auth_service:
        Operation implementations.
    session_manager:
        Shut down together with the context.
    error_handler:
        Classifies unexpected failures surfaced through the context.
    logger:
        Injected structured logger.
    """

    def __init__(
        self,
        auth_service: AuthService,
        session_manager: SessionManager,
        error_handler: ErrorHandler,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._auth = auth_service
        self._sessions = session_manager
        self._errors = error_handler

        self._user: Optional[UserProfile] = None
        self._error: Optional[AuthError] = None
        self._initializing: bool = False
        self._loading_count: int = 0
        self._closed: bool = False

        self._initialize_task: Optional[asyncio.Task[Optional[UserProfile]]] = None
        self._pending: dict[str, asyncio.Task[Any]] = {}
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def user(self) -> Optional[UserProfile]:
        return self._user

    @property
    def error(self) -> Optional[AuthError]:
        return self._error

    @property
    def initializing(self) -> bool:
        return self._initializing

    @property
    def loading(self) -> bool:
        return self._loading_count > 0

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_operations(self) -> frozenset[str]:
        return frozenset(self._pending)

    @property
    def state(self) -> SessionState:
        return SessionState(
            user=self._user,
            initializing=self._initializing,
            loading=self.loading,
            error=self._error,
        )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener* for state snapshots; returns an unsubscribe
        callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        if self._closed or not self._listeners:
            return
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                self._logger.warning(
                    "Session state listener failed: %s", exc,
                    extra={"event": "LISTENER_ERROR"},
                )

    def _commit(
        self,
        *,
        user: Optional[UserProfile] = _UNSET,
        error: Optional[AuthError] = _UNSET,
    ) -> None:
        """Write state unless the context was closed."""
        if self._closed:
            return
        if user is not _UNSET:
            self._user = user
        if error is not _UNSET:
            self._error = error
        self._notify()

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> Optional[UserProfile]:
        """Restore the persisted session and resolve the user, once."""
        if self._initialize_task is None:
            self._initializing = True
            self._notify()
            self._initialize_task = asyncio.create_task(self._initialize())
        return await asyncio.shield(self._initialize_task)

    async def _initialize(self) -> Optional[UserProfile]:
        try:
            user = await self._auth.get_current_user()
            self._commit(user=user)
            return user
        finally:
            self._initializing = False
            self._notify()

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    def _dedupe(self, key: str, operation: Callable[[], Awaitable[T]]) -> Awaitable[T]:
        task = self._pending.get(key)
        if task is None:
            self._loading_count += 1
            self._notify()
            task = asyncio.create_task(self._run(key, operation))
            self._pending[key] = task
        else:
            self._logger.debug("Joining in-flight operation %s", key)
        return asyncio.shield(task)

    async def _run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        finally:
            self._pending.pop(key, None)
            self._loading_count -= 1
            self._notify()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def sign_up(self, params: SignUpParams) -> SignUpResult:
        async def _op() -> SignUpResult:
            result = await self._auth.sign_up(params)
            if result.user is not None:
                self._commit(user=result.user, error=result.error)
            else:
                self._commit(error=result.error)
            return result

        return await self._dedupe(f"sign_up:{normalize_identity(params.email)}", _op)

    async def sign_in(self, email: str, password: str) -> SignInResult:
        async def _op() -> SignInResult:
            result = await self._auth.sign_in(email, password)
            if result.success:
                self._commit(user=result.user, error=None)
            else:
                self._commit(error=result.error)
            return result

        return await self._dedupe(f"sign_in:{normalize_identity(email)}", _op)

    async def sign_out(self) -> None:
        async def _op() -> None:
            await self._auth.sign_out()
            self._commit(user=None, error=None)

        await self._dedupe("sign_out", _op)

    async def _raising(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation*, recording a classified error before re-raising."""
        try:
            return await operation()
        except AuthError as exc:
            self._commit(error=exc)
            raise
        except Exception as exc:
            error = self._errors.handle(exc, "SessionContext")
            self._commit(error=error)
            raise error from exc

    async def request_password_reset(self, email: str) -> None:
        async def _op() -> None:
            await self._raising(lambda: self._auth.request_password_reset(email))
            self._commit(error=None)

        await self._dedupe(f"request_password_reset:{normalize_identity(email)}", _op)

    async def reset_password(self, token: str, new_password: str) -> None:
        async def _op() -> None:
            await self._raising(lambda: self._auth.reset_password(token, new_password))
            self._commit(user=None, error=None)

        await self._dedupe(f"reset_password:{token}", _op)

    async def resend_verification(self, email: str) -> None:
        async def _op() -> None:
            await self._raising(lambda: self._auth.resend_verification_email(email))
            self._commit(error=None)

        await self._dedupe(f"resend_verification:{normalize_identity(email)}", _op)

    async def complete_email_verification(self, token: str) -> UserProfile:
        async def _op() -> UserProfile:
            profile = await self._raising(lambda: self._auth.complete_email_verification(token))
            self._commit(user=profile, error=None)
            return profile

        return await self._dedupe(f"complete_email_verification:{token}", _op)

    async def refresh_user(self) -> Optional[UserProfile]:
        async def _op() -> Optional[UserProfile]:
            user = await self._auth.get_current_user()
            self._commit(user=user)
            return user

        return await self._dedupe("refresh_user", _op)

    async def update_profile(
        self,
        updates: Union[ProfileUpdate, Mapping[str, object]],
    ) -> UserProfile:
        """Update the signed-in user's profile.

        Raises
        ------
        AuthError
            ``SESSION_EXPIRED`` when nobody is signed in, otherwise as
            ``AuthService.update_profile``.
        """
        current = self._user
        if current is None:
            error = self._errors.create_error(
                AuthErrorCode.SESSION_EXPIRED,
                "No signed-in user to update",
                retryable=False,
            )
            self._commit(error=error)
            raise error
        user_id: str = current.id

        async def _op() -> UserProfile:
            profile = await self._raising(lambda: self._auth.update_profile(user_id, updates))
            self._commit(user=profile, error=None)
            return profile

        return await self._dedupe(f"update_profile:{user_id}", _op)

    async def get_current_user(self) -> Optional[UserProfile]:
        """Fresh read of the current user; does not change context state."""
        return await self._auth.get_current_user()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Mark the context closed and stop background session work.

        In-flight operations are not aborted; their results are simply
        not committed.
        """
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        self._sessions.shutdown()
        self._logger.info(
            "Session context closed with %d operation(s) in flight.",
            len(self._pending),
            extra={"event": "CONTEXT_CLOSED"},
        )
