"""
Background token refresh scheduler.

Every interval, refreshes each active credential whose access token expires
within the refresh threshold, independent of request traffic.

FLOW:
1. List active credentials with a refresh token expiring before now + threshold
2. For each, run the lifecycle manager's refresh path with the threshold as margin
3. Count the outcome; one credential's failure never stops the run

CONSTRAINTS:
- Shares the lifecycle manager (and so its in-flight refreshes) with
  on-demand callers in the same process
- Transient failures leave the credential as it is; it is retried next tick
- Only an explicit refresh-token rejection makes a credential inactive

Usage:
    python -m marketplace_auth.workers.token_refresh_scheduler
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from marketplace_auth.credentials.refresh import RefreshResultStatus, TokenLifecycleManager
from marketplace_auth.credentials.retry import ErrorCategory, categorize_error
from marketplace_auth.credentials.store import CredentialStore
from marketplace_auth.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 600
DEFAULT_THRESHOLD = timedelta(minutes=60)


@dataclass
class RefreshRunStats:
    """Track scheduler run statistics."""

    evaluated: int = 0
    refreshed: int = 0
    skipped: int = 0
    transient_failures: int = 0
    rejected: int = 0
    errors: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "evaluated": self.evaluated,
            "refreshed": self.refreshed,
            "skipped": self.skipped,
            "transient_failures": self.transient_failures,
            "rejected": self.rejected,
            "errors": self.errors,
            "duration_seconds": round(duration, 2),
        }


class RefreshScheduler:
    """
    Owns the refresh loop as an explicit background task.

    start() schedules the loop on the running event loop; stop() signals it
    and waits for the current run to finish.
    """

    def __init__(
        self,
        store: CredentialStore,
        manager: TokenLifecycleManager,
        clock: Clock = utc_now,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        threshold: timedelta = DEFAULT_THRESHOLD,
    ):
        self.store = store
        self.manager = manager
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.threshold = threshold
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="token-refresh-scheduler")
        logger.info(
            "Token refresh scheduler started",
            extra={
                "interval_seconds": self.interval_seconds,
                "threshold_minutes": self.threshold.total_seconds() / 60,
            },
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Token refresh scheduler stopped", extra={"runs": self.runs})

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await self._task

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Token refresh run failed")

            # Sleep until next run or stop
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> RefreshRunStats:
        """
        Refresh every credential expiring within the threshold.

        Returns:
            RefreshRunStats with run summary
        """
        stats = RefreshRunStats()
        self.runs += 1
        candidates = self.store.list_refreshable(self.clock() + self.threshold)

        logger.info("Token refresh run started", extra={"candidate_count": len(candidates)})

        for credential in candidates:
            stats.evaluated += 1
            try:
                result = await self.manager.ensure_fresh(credential, self.threshold)
            except Exception as exc:
                category = categorize_error(exc)
                if category in (ErrorCategory.TRANSIENT, ErrorCategory.CONFLICT):
                    stats.transient_failures += 1
                elif category == ErrorCategory.REJECTED:
                    stats.rejected += 1
                else:
                    stats.errors += 1
                    logger.exception(
                        "Unexpected error refreshing credential",
                        extra={
                            "credential_id": credential.id,
                            "platform": credential.platform.value,
                        },
                    )
                continue

            if result.status == RefreshResultStatus.REFRESHED:
                stats.refreshed += 1
            else:
                stats.skipped += 1

        logger.info("Token refresh run completed", extra=stats.to_dict())
        return stats


async def run_scheduler_async() -> None:
    """
    Build dependencies from the environment and run until SIGTERM/SIGINT.
    """
    from marketplace_auth.config.settings import load_settings
    from marketplace_auth.credentials.encryption import validate_encryption_ready
    from marketplace_auth.database import create_session_factory
    from marketplace_auth.integrations.shopee.oauth_client import ShopeeOAuthClient
    from marketplace_auth.integrations.tiktok.oauth_client import TikTokOAuthClient
    from marketplace_auth.signing.signer import RequestSigner
    from marketplace_auth.credentials.types import Platform
    from marketplace_auth.utils.encryption import SecretCipher

    settings = load_settings()
    policy = settings.token_policy

    cipher = SecretCipher(key=settings.encryption_key)
    validate_encryption_ready(cipher)

    session_factory = create_session_factory(
        settings.database_url,
        create_tables=settings.database_url.startswith("sqlite"),
    )
    store = CredentialStore(session_factory, cipher)
    signer = RequestSigner(settings.tiktok, settings.shopee)

    async with TikTokOAuthClient(settings.tiktok, signer, timeout=policy.http_timeout_seconds) as tiktok, \
            ShopeeOAuthClient(settings.shopee, signer, timeout=policy.http_timeout_seconds) as shopee:
        manager = TokenLifecycleManager(
            store,
            refreshers={Platform.TIKTOK: tiktok, Platform.SHOPEE: shopee},
            safety_margin=timedelta(seconds=policy.safety_margin_seconds),
            refresh_timeout_seconds=policy.refresh_timeout_seconds,
        )
        scheduler = RefreshScheduler(
            store,
            manager,
            interval_seconds=policy.refresh_interval_seconds,
            threshold=timedelta(minutes=policy.refresh_threshold_minutes),
        )

        shutdown_event = asyncio.Event()

        def _handle_signal(sig, _frame):
            logger.info("Received signal %s, shutting down gracefully", sig)
            shutdown_event.set()

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

        await scheduler.start()
        await shutdown_event.wait()
        await scheduler.stop()


def main():
    """Entry point for running the scheduler from the command line."""
    from marketplace_auth.credentials.redaction import configure_logging

    configure_logging()
    try:
        asyncio.run(run_scheduler_async())
        sys.exit(0)
    except Exception as e:
        logger.error("Token refresh scheduler failed", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
