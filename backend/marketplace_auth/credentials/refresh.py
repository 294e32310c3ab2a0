"""
Token lifecycle management for marketplace credentials.

Decides whether a credential is usable and refreshes it when it is not.

States (evaluated on demand, never stored):
- FRESH: now + margin < expires_at
- STALE: within margin of expiry, already expired, or expiry unknown
- DEAD:  inactive, no refresh token, or refresh token expired

SINGLE-FLIGHT:
At most one refresh per credential is in flight inside a process. The first
caller that finds a STALE credential starts a refresh task, which re-reads the
credential and refreshes it if it is still STALE. Callers arriving while that
task runs await it and share its outcome, success or failure. The task is
forgotten once it finishes. Writes are additionally guarded by the row
version, so a refresh from another process is detected instead of
overwritten.

The background scheduler and on-demand callers share one manager, so they
share in-flight refreshes.

Usage:
    manager = TokenLifecycleManager(store, refreshers={
        Platform.TIKTOK: tiktok_client,
        Platform.SHOPEE: shopee_client,
    })

    credential = await manager.get_valid_credential(Platform.TIKTOK, shop_id)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Mapping, Optional

from marketplace_auth.credentials.retry import (
    ErrorCategory,
    log_refresh_failure,
)
from marketplace_auth.credentials.store import CredentialStore
from marketplace_auth.credentials.types import Credential, CredentialStatus, Platform
from marketplace_auth.integrations.base import TokenRefresher
from marketplace_auth.platform.errors import (
    ConfigurationError,
    CredentialNotFoundError,
    ReauthorizationRequiredError,
    RefreshRejectedError,
    RefreshTransientError,
    StaleCredentialError,
)
from marketplace_auth.utils.clock import Clock, as_utc, utc_now

logger = logging.getLogger(__name__)

# On-demand callers refresh when less than this remains
DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)
# Bound on one refresh exchange; waiters are released when it fires
DEFAULT_REFRESH_TIMEOUT_SECONDS = 45.0


class CredentialState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    DEAD = "dead"


class RefreshResultStatus(str, Enum):
    """Result status for refresh operations."""
    REFRESHED = "refreshed"
    NOT_NEEDED = "not_needed"


@dataclass
class RefreshResult:
    """
    Result of ensure_fresh.

    NOT_NEEDED covers both "was already fresh" and "another caller refreshed
    it while we waited on its refresh".
    """
    status: RefreshResultStatus
    credential: Credential


def classify(credential: Credential, now: datetime, margin: timedelta) -> CredentialState:
    """
    Classify a credential at a point in time.

    A credential expiring exactly at now + margin is STALE.
    """
    if credential.status == CredentialStatus.INACTIVE:
        return CredentialState.DEAD

    if credential.access_token and credential.expires_at is not None:
        if as_utc(now) + margin < as_utc(credential.expires_at):
            return CredentialState.FRESH

    if not credential.refresh_token:
        return CredentialState.DEAD
    if credential.refresh_token_expires_at is not None and as_utc(now) >= as_utc(credential.refresh_token_expires_at):
        return CredentialState.DEAD

    return CredentialState.STALE


class TokenLifecycleManager:
    """
    Hands out valid credentials, refreshing them against the platform when
    needed.
    """

    def __init__(
        self,
        store: CredentialStore,
        refreshers: Mapping[Platform, TokenRefresher],
        clock: Clock = utc_now,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        refresh_timeout_seconds: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.refreshers = dict(refreshers)
        self.clock = clock
        self.safety_margin = safety_margin
        self.refresh_timeout_seconds = refresh_timeout_seconds
        # Refreshes currently running, keyed by credential id
        self._in_flight: dict[int, "asyncio.Task[RefreshResult]"] = {}

    def classify(self, credential: Credential, margin: Optional[timedelta] = None) -> CredentialState:
        return classify(credential, self.clock(), self.safety_margin if margin is None else margin)

    async def get_valid_credential(self, platform: Platform, shop_id: str) -> Credential:
        """
        Return a credential for the shop that is safe to sign a request with.

        Raises:
            CredentialNotFoundError: No credential controls the shop
            ReauthorizationRequiredError: The credential is DEAD
            RefreshTransientError: Refresh failed and the token has expired
            DecryptionError: Stored tokens cannot be decrypted
        """
        credential = self.store.find_by_shop(platform, shop_id)
        if credential is None:
            raise CredentialNotFoundError(platform.value, shop_id)

        try:
            result = await self.ensure_fresh(credential, self.safety_margin)
        except RefreshTransientError:
            # One attempt on demand. A token that is inside the margin but not
            # yet expired is still usable; an expired one is not.
            current = self.store.get(credential.id) or credential
            if current.expires_at is not None and as_utc(self.clock()) < as_utc(current.expires_at):
                logger.warning(
                    "Token refresh failed, using access token inside safety margin",
                    extra={
                        "credential_id": current.id,
                        "platform": platform.value,
                        "expires_at": as_utc(current.expires_at).isoformat(),
                    },
                )
                return current
            raise

        return result.credential

    async def ensure_fresh(self, credential: Credential, margin: timedelta) -> RefreshResult:
        """
        Refresh the credential unless it is FRESH for the given margin.

        Callers arriving while a refresh of the same credential is in flight
        await that refresh and receive its credential or its exception.

        Raises:
            ReauthorizationRequiredError: DEAD credential or rejected refresh token
            RefreshTransientError: Network failure, timeout or retryable platform error
            StaleCredentialError: Another process updated the row and it is still stale
        """
        state = classify(credential, self.clock(), margin)
        if state == CredentialState.FRESH:
            return RefreshResult(RefreshResultStatus.NOT_NEEDED, credential)
        if state == CredentialState.DEAD:
            self._raise_dead(credential)

        task = self._in_flight.get(credential.id)
        if task is not None:
            logger.debug(
                "Joining in-flight refresh",
                extra={"credential_id": credential.id, "platform": credential.platform.value},
            )
            result = await asyncio.shield(task)
            return RefreshResult(RefreshResultStatus.NOT_NEEDED, result.credential)

        task = asyncio.create_task(self._refresh_current(credential, margin))
        self._in_flight[credential.id] = task
        task.add_done_callback(lambda done, credential_id=credential.id: self._forget(credential_id, done))
        # Cancelling one caller must not cancel the refresh the others wait on
        return await asyncio.shield(task)

    def _forget(self, credential_id: int, task: "asyncio.Task[RefreshResult]") -> None:
        if self._in_flight.get(credential_id) is task:
            del self._in_flight[credential_id]

    async def _refresh_current(self, credential: Credential, margin: timedelta) -> RefreshResult:
        current = self.store.get(credential.id)
        if current is None:
            raise CredentialNotFoundError(credential.platform.value, str(credential.id))

        state = classify(current, self.clock(), margin)
        if state == CredentialState.FRESH:
            logger.debug(
                "Credential refreshed by another caller",
                extra={"credential_id": current.id, "platform": current.platform.value},
            )
            return RefreshResult(RefreshResultStatus.NOT_NEEDED, current)
        if state == CredentialState.DEAD:
            self._raise_dead(current)

        refreshed = await self._refresh_with_platform(current, margin)
        return RefreshResult(RefreshResultStatus.REFRESHED, refreshed)

    async def _refresh_with_platform(self, credential: Credential, margin: timedelta) -> Credential:
        platform = credential.platform
        refresher = self.refreshers.get(platform)
        if refresher is None:
            raise ConfigurationError(f"No token refresher configured for {platform.value}")

        logger.info(
            "Refreshing access token",
            extra={
                "credential_id": credential.id,
                "platform": platform.value,
                "shop_id": credential.shop_id,
            },
        )

        try:
            grant = await asyncio.wait_for(
                refresher.refresh_credential(credential),
                timeout=self.refresh_timeout_seconds,
            )
        except Exception as exc:
            category = log_refresh_failure(exc, credential.id, platform.value)

            if category == ErrorCategory.REJECTED:
                self.store.mark_inactive(credential.id, reason=str(exc) or "refresh_token_rejected")
                if isinstance(exc, RefreshRejectedError) and exc.shop_id:
                    raise
                raise RefreshRejectedError(
                    platform=platform.value,
                    shop_id=credential.shop_id,
                    platform_error=getattr(exc, "platform_error", None),
                ) from exc

            if category == ErrorCategory.TRANSIENT:
                self.store.record_refresh_failure(credential.id, str(exc) or type(exc).__name__)
                if isinstance(exc, RefreshTransientError):
                    raise
                raise RefreshTransientError(
                    message="Token refresh timed out or the platform was unreachable",
                    platform=platform.value,
                ) from exc

            raise

        try:
            return self.store.update_tokens(credential.id, grant, expected_version=credential.version)
        except StaleCredentialError:
            # Another process wrote first; its tokens are authoritative
            current = self.store.get(credential.id)
            if current is not None and classify(current, self.clock(), margin) == CredentialState.FRESH:
                logger.warning(
                    "Discarding refresh result, credential updated concurrently",
                    extra={"credential_id": credential.id, "platform": platform.value},
                )
                return current
            raise

    def _raise_dead(self, credential: Credential) -> None:
        if credential.status == CredentialStatus.INACTIVE:
            reason = "credential_inactive"
        elif not credential.refresh_token:
            reason = "refresh_token_missing"
        else:
            reason = "refresh_token_expired"
            # Stop the scheduler from picking it up again
            self.store.mark_inactive(credential.id, reason=reason)

        logger.info(
            "Credential requires re-authorization",
            extra={
                "credential_id": credential.id,
                "platform": credential.platform.value,
                "reason": reason,
            },
        )
        raise ReauthorizationRequiredError(
            platform=credential.platform.value,
            shop_id=credential.shop_id,
            reason=reason,
        )
