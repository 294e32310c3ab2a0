"""
Shared plumbing for marketplace OAuth clients.

Every token-endpoint call goes through MarketplaceOAuthClient._send, which
turns transport failures, timeouts and retryable HTTP statuses into
RefreshTransientError and hands back the decoded JSON body for everything
else. Each platform client then classifies its own error payloads.
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from marketplace_auth.credentials.redaction import redact_credential_value
from marketplace_auth.credentials.retry import ErrorCategory, classify_http_status
from marketplace_auth.credentials.types import Credential, Platform, TokenGrant
from marketplace_auth.platform.errors import AuthorizationExchangeError, RefreshTransientError
from marketplace_auth.signing.signer import SignedRequest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class TokenRefresher(Protocol):
    """What the token lifecycle manager needs from a platform client."""

    async def refresh_credential(self, credential: Credential) -> TokenGrant:
        ...


class MarketplaceOAuthClient:
    """Base class owning the httpx.AsyncClient and the request/classify step."""

    platform: Platform

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _send(self, request: SignedRequest) -> tuple[int, dict[str, Any]]:
        """
        Send a signed request and decode its JSON body.

        Returns:
            (HTTP status, decoded body) for any non-retryable response

        Raises:
            RefreshTransientError: Network error, timeout, retryable status or
                a body that is not a JSON object
        """
        try:
            response = await self._client.request(**request.to_httpx_kwargs())
        except httpx.TimeoutException as e:
            logger.warning(
                "Marketplace token endpoint timed out",
                extra={"platform": self.platform.value, "url": request.url},
            )
            raise RefreshTransientError(
                message="Marketplace token endpoint timed out",
                platform=self.platform.value,
            ) from e
        except httpx.TransportError as e:
            logger.warning(
                "Marketplace token endpoint unreachable",
                extra={
                    "platform": self.platform.value,
                    "url": request.url,
                    "error_type": type(e).__name__,
                },
            )
            raise RefreshTransientError(
                message="Marketplace token endpoint unreachable",
                platform=self.platform.value,
            ) from e

        if response.status_code >= 400 and classify_http_status(response.status_code) == ErrorCategory.TRANSIENT:
            logger.warning(
                "Marketplace token endpoint returned retryable status",
                extra={"platform": self.platform.value, "status_code": response.status_code},
            )
            raise RefreshTransientError(
                message=f"Marketplace token endpoint returned HTTP {response.status_code}",
                platform=self.platform.value,
                upstream_status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            logger.warning(
                "Marketplace token endpoint returned non-JSON body",
                extra={
                    "platform": self.platform.value,
                    "status_code": response.status_code,
                    "body_preview": redact_credential_value(response.text[:200]),
                },
            )
            raise RefreshTransientError(
                message="Marketplace token endpoint returned an unreadable response",
                platform=self.platform.value,
                upstream_status=response.status_code,
            ) from e

        if not isinstance(body, dict):
            raise RefreshTransientError(
                message="Marketplace token endpoint returned an unexpected payload",
                platform=self.platform.value,
                upstream_status=response.status_code,
            )

        return response.status_code, body

    async def _send_for_authorization(self, request: SignedRequest) -> tuple[int, dict[str, Any]]:
        """Like _send, but failures surface as AuthorizationExchangeError (502)."""
        try:
            return await self._send(request)
        except RefreshTransientError as e:
            raise AuthorizationExchangeError(
                e.message,
                platform=self.platform.value,
                status_code=502,
            ) from e
