"""
Profile Synchronisation Service.

Keeps the application-level profile row (``users`` table) consistent with
the identity provider.

Creation strategy:
    - Look up by id first; an existing row always wins.
    - Insert; a uniqueness violation (SQLSTATE 23505) means a concurrent
      caller created the row, so re-fetch and return theirs.
    - ``create_profile_safe`` reaches the same end state through an
      upsert with ``ignore_duplicates``.
    - ``retry_profile_creation`` wraps ``create_profile`` in an
      exponential backoff ladder.

Sync strategy:
    - Only ``email`` is reconciled from the provider.
    - ``role`` and ``verification_status`` are never written here after
      creation.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Union

from postgrest.exceptions import APIError
from supabase_auth import AsyncGoTrueClient

from authgate.logger import StructuredLogger
from authgate.models.auth_models import AuthError, AuthErrorCode
from authgate.models.enums import VerificationStatus
from authgate.models.user import IdentityUser, ProfileMetadata, ProfileUpdate, UserProfile
from authgate.repositories.profile_repository import UNIQUE_VIOLATION, ProfileRepository
from authgate.services.base_service import BaseService
from authgate.services.error_handler import ErrorHandler
from authgate.utils.audit import log_audit_event
from authgate.utils.retry import RetryPolicy, SleepFn, retry_async


DEFAULT_CREATION_POLICY = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0, jitter=0.1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProfileSyncService(BaseService):
    """Creates, reads, updates and reconciles ``UserProfile`` rows.

    Parameters
    ----------
    repo:
        Profile table access.
    auth:
        The provider's auth client (``AsyncClient.auth``), used by
        ``sync_profile`` to read the current identity.
    error_handler:
        Classifies store and provider faults.
    logger:
        Injected structured logger.
    clock:
        Returns the current aware UTC time; stamps ``created_at`` and
        ``updated_at``.
    sleep:
        Awaitable sleep used between creation retries.
    """

    def __init__(
        self,
        repo: ProfileRepository,
        auth: AsyncGoTrueClient,
        error_handler: ErrorHandler,
        logger: StructuredLogger,
        clock: Callable[[], datetime] = _utcnow,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        super().__init__(logger)
        self._repo = repo
        self._auth = auth
        self._errors = error_handler
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _new_profile(self, identity: IdentityUser, metadata: ProfileMetadata) -> UserProfile:
        if not identity.email:
            raise self._errors.create_error(
                AuthErrorCode.PROFILE_CREATION_FAILED,
                f"Identity {identity.id} has no email address",
                retryable=False,
                metadata={"user_id": identity.id},
            )
        now = self._clock()
        return UserProfile(
            id=identity.id,
            email=identity.email,
            name=metadata.name,
            role=metadata.role,
            verification_status=VerificationStatus.initial_for(metadata.role),
            created_at=now,
            updated_at=now,
        )

    def _creation_failed(self, exc: Exception, identity: IdentityUser) -> AuthError:
        cause = self._errors.classify(exc)
        return self._errors.create_error(
            AuthErrorCode.PROFILE_CREATION_FAILED,
            f"Failed to create user profile: {cause.message}",
            retryable=True,
            metadata={"user_id": identity.id, "cause": cause.code.value},
        )

    def _audit_created(self, profile: UserProfile, strategy: str) -> None:
        log_audit_event(
            logger=self._logger,
            action="PROFILE_CREATE",
            entity_type="UserProfile",
            entity_id=profile.id,
            user_id=profile.id,
            details={
                "email": profile.email,
                "role": str(profile.role),
                "verification_status": str(profile.verification_status),
                "strategy": strategy,
            },
        )

    async def create_profile(
        self,
        identity: IdentityUser,
        metadata: ProfileMetadata,
    ) -> UserProfile:
        """Return the profile for *identity*, creating it if absent.

        Concurrent calls for the same identity converge on one row; the
        first successful insert wins and every caller returns it.

        Raises
        ------
        AuthError
            ``PROFILE_CREATION_FAILED`` (retryable) when the row could not
            be written or re-read.
        """
        try:
            existing = await self._repo.get_by_id(identity.id)
            if existing is not None:
                return existing

            profile = self._new_profile(identity, metadata)
            try:
                created = await self._repo.insert(profile)
            except APIError as exc:
                if str(exc.code) != UNIQUE_VIOLATION:
                    raise
                self._logger.warning(
                    "Profile insert raced for %s; re-fetching winning row.",
                    identity.id,
                    extra={"event": "PROFILE_CREATE_RACE"},
                )
                winner = await self._repo.get_by_id(identity.id)
                if winner is None:
                    raise self._errors.create_error(
                        AuthErrorCode.PROFILE_CREATION_FAILED,
                        "Profile reported as duplicate but could not be re-read",
                        retryable=True,
                        metadata={"user_id": identity.id},
                    ) from exc
                return winner
        except AuthError:
            raise
        except Exception as exc:
            raise self._creation_failed(exc, identity) from exc

        self._audit_created(created, "insert")
        return created

    async def create_profile_safe(
        self,
        identity: IdentityUser,
        metadata: ProfileMetadata,
    ) -> UserProfile:
        """Same contract as ``create_profile`` using an upsert that
        ignores duplicates."""
        try:
            existing = await self._repo.get_by_id(identity.id)
            if existing is not None:
                return existing

            created = await self._repo.upsert_ignore_duplicates(
                self._new_profile(identity, metadata),
            )
            if created is None:
                created = await self._repo.get_by_id(identity.id)
                if created is None:
                    raise self._errors.create_error(
                        AuthErrorCode.PROFILE_CREATION_FAILED,
                        "Upsert skipped but no existing profile was found",
                        retryable=True,
                        metadata={"user_id": identity.id},
                    )
                return created
        except AuthError:
            raise
        except Exception as exc:
            raise self._creation_failed(exc, identity) from exc

        self._audit_created(created, "upsert")
        return created

    async def retry_profile_creation(
        self,
        identity: IdentityUser,
        metadata: ProfileMetadata,
        policy: Optional[RetryPolicy] = None,
    ) -> UserProfile:
        """``create_profile`` under an exponential backoff ladder.

        A non-retryable error stops the ladder and is re-raised as is.
        When every attempt fails a terminal, non-retryable
        ``PROFILE_CREATION_FAILED`` is raised.
        """
        policy = policy or DEFAULT_CREATION_POLICY

        def _on_retry(attempt: int, exc: Exception, delay: float) -> None:
            self._logger.warning(
                "Profile creation attempt %d for %s failed (%s); retrying in %.2fs",
                attempt,
                identity.id,
                exc,
                delay,
                extra={"event": "PROFILE_CREATE_RETRY"},
            )

        try:
            return await retry_async(
                lambda: self.create_profile(identity, metadata),
                policy,
                should_retry=lambda exc: isinstance(exc, AuthError) and exc.retryable,
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except AuthError as exc:
            if not exc.retryable:
                raise
            raise self._errors.create_error(
                AuthErrorCode.PROFILE_CREATION_FAILED,
                exc.message,
                retryable=False,
                metadata={
                    "user_id": identity.id,
                    "attempts": policy.max_retries + 1,
                },
            ) from exc

    # ------------------------------------------------------------------
    # Read / update
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        """Return the stored profile, or ``None`` when no row exists.

        Raises
        ------
        AuthError
            ``DATABASE_ERROR`` for genuine store faults.
        """
        try:
            return await self._repo.get_by_id(user_id)
        except Exception as exc:
            cause = self._errors.classify(exc)
            raise self._errors.create_error(
                AuthErrorCode.DATABASE_ERROR,
                f"Failed to fetch user profile: {cause.message}",
                retryable=True,
                metadata={"user_id": user_id, "cause": cause.code.value},
            ) from exc

    async def update_profile(
        self,
        user_id: str,
        updates: Union[ProfileUpdate, Mapping[str, object]],
    ) -> UserProfile:
        """Apply *updates* and stamp ``updated_at``.

        Raises
        ------
        AuthError
            ``PROFILE_UPDATE_FAILED`` (retryable) on any failure.
        """
        if isinstance(updates, ProfileUpdate):
            patch: dict[str, object] = dict(updates.to_patch())
        else:
            patch = dict(updates)
        patch["updated_at"] = self._clock().isoformat()

        try:
            updated = await self._repo.update(user_id, patch)
        except Exception as exc:
            cause = self._errors.classify(exc)
            raise self._errors.create_error(
                AuthErrorCode.PROFILE_UPDATE_FAILED,
                f"Failed to update user profile: {cause.message}",
                retryable=True,
                metadata={"user_id": user_id, "cause": cause.code.value},
            ) from exc

        if updated is None:
            raise self._errors.create_error(
                AuthErrorCode.PROFILE_UPDATE_FAILED,
                f"No profile row matched id {user_id}",
                retryable=True,
                metadata={"user_id": user_id},
            )

        log_audit_event(
            logger=self._logger,
            action="PROFILE_UPDATE",
            entity_type="UserProfile",
            entity_id=user_id,
            user_id=user_id,
            details={"fields": ",".join(sorted(k for k in patch if k != "updated_at"))},
        )
        return updated

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_profile(self, user_id: str) -> UserProfile:
        """Reconcile the stored email with the provider's current identity.

        Writes only when the two differ.

        Raises
        ------
        AuthError
            ``SESSION_EXPIRED`` when the provider has no current user or it
            is a different identity; ``PROFILE_CREATION_FAILED``
            (non-retryable) when no profile row exists.
        """
        try:
            response = await self._auth.get_user()
        except Exception as exc:
            cause = self._errors.classify(exc)
            raise self._errors.create_error(
                AuthErrorCode.SESSION_EXPIRED,
                f"Could not read current identity: {cause.message}",
                retryable=False,
                metadata={"user_id": user_id, "cause": cause.code.value},
            ) from exc

        provider_user = response.user if response is not None else None
        if provider_user is None or str(provider_user.id) != user_id:
            raise self._errors.create_error(
                AuthErrorCode.SESSION_EXPIRED,
                "Invalid or expired session",
                retryable=False,
                metadata={"user_id": user_id},
            )

        profile = await self.get_profile(user_id)
        if profile is None:
            raise self._errors.create_error(
                AuthErrorCode.PROFILE_CREATION_FAILED,
                "User profile not found",
                retryable=False,
                metadata={"user_id": user_id},
            )

        if not provider_user.email or provider_user.email == profile.email:
            return profile

        synced = await self.update_profile(user_id, {"email": provider_user.email})
        log_audit_event(
            logger=self._logger,
            action="PROFILE_SYNC",
            entity_type="UserProfile",
            entity_id=user_id,
            user_id=user_id,
            details={"old_email": profile.email, "new_email": provider_user.email},
        )
        return synced
