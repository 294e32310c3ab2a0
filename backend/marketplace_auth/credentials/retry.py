"""
Retry classification for token refresh failures.

The single place that decides whether a refresh failure is worth retrying.
The on-demand refresh path and the background scheduler both consult it.

Categories:
- transient: network errors, timeouts, 408/425/429/5xx. Retried by the
  scheduler on its next tick; never retried synchronously on demand.
- rejected: the platform refused the refresh token. Never retried; the
  credential requires re-authorization.
- conflict: another writer updated the credential first. Safe to re-read.
- terminal: decryption, signing, configuration and programming errors.
"""

import asyncio
import logging
from enum import Enum

import httpx

from marketplace_auth.platform.errors import (
    ReauthorizationRequiredError,
    RefreshTransientError,
    StaleCredentialError,
)

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_STATUSES = frozenset({408, 425, 429})


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    REJECTED = "rejected"
    CONFLICT = "conflict"
    TERMINAL = "terminal"


def classify_http_status(status_code: int) -> ErrorCategory:
    """Classify a non-2xx HTTP status from a token endpoint."""
    if status_code in TRANSIENT_HTTP_STATUSES or status_code >= 500:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.TERMINAL


def categorize_error(exc: BaseException) -> ErrorCategory:
    # RefreshRejectedError is a ReauthorizationRequiredError
    if isinstance(exc, ReauthorizationRequiredError):
        return ErrorCategory.REJECTED
    if isinstance(exc, StaleCredentialError):
        return ErrorCategory.CONFLICT
    if isinstance(exc, (RefreshTransientError, httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.TERMINAL


def should_retry(category: ErrorCategory) -> bool:
    return category in (ErrorCategory.TRANSIENT, ErrorCategory.CONFLICT)


def log_refresh_failure(exc: BaseException, credential_id: int, platform: str) -> ErrorCategory:
    """Categorize a refresh failure and log it at a level matching its category."""
    category = categorize_error(exc)
    level = logging.WARNING if should_retry(category) else logging.ERROR
    logger.log(
        level,
        "Token refresh failed",
        extra={
            "credential_id": credential_id,
            "platform": platform,
            "error_category": category.value,
            "error_type": type(exc).__name__,
            "will_retry": should_retry(category),
        },
    )
    return category
