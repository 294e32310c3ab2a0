"""
Shopee Open Platform OAuth client.

All three auth endpoints are public-signed (partner_id + path + timestamp).
Token responses are flat: {error, message, request_id, access_token,
refresh_token, expire_in}, with expire_in relative to the response time.
A non-empty `error` means failure regardless of HTTP status.
"""

import logging
from datetime import timedelta
from typing import Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from marketplace_auth.config.settings import ShopeeSettings
from marketplace_auth.credentials.types import (
    Credential,
    Platform,
    TokenGrant,
)
from marketplace_auth.integrations.base import DEFAULT_TIMEOUT_SECONDS, MarketplaceOAuthClient
from marketplace_auth.platform.errors import (
    AuthorizationExchangeError,
    RefreshRejectedError,
    RefreshTransientError,
    SignatureError,
)
from marketplace_auth.signing.signer import RequestSigner
from marketplace_auth.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

AUTH_PARTNER_PATH = "/api/v2/shop/auth_partner"
TOKEN_GET_PATH = "/api/v2/auth/token/get"
ACCESS_TOKEN_GET_PATH = "/api/v2/auth/access_token/get"

EXTERNAL_ID_PREFIX = "shopee_"

# Always a dead refresh token
_REJECTED_ERRORS = frozenset({"invalid_refresh_token", "error_refresh_token"})
# Dead only when the message names the refresh token
_AMBIGUOUS_ERRORS = frozenset({"error_auth", "error_param", "error_permission"})


class ShopeeTokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    error: Optional[str] = ""
    message: Optional[str] = ""
    request_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expire_in: Optional[int] = None
    shop_id: Optional[Union[int, str]] = None
    merchant_id: Optional[Union[int, str]] = None
    shop_id_list: list[Union[int, str]] = Field(default_factory=list)
    merchant_id_list: list[Union[int, str]] = Field(default_factory=list)


def shopee_external_id(shop_id: Union[int, str]) -> str:
    return f"{EXTERNAL_ID_PREFIX}{shop_id}"


def is_rejected_refresh_error(error: str, message: str) -> bool:
    """True when a Shopee error payload says the refresh token itself is unusable."""
    error = (error or "").lower()
    if error in _REJECTED_ERRORS:
        return True
    if error in _AMBIGUOUS_ERRORS:
        text = (message or "").lower()
        return "refresh" in text and "token" in text
    return False


class ShopeeOAuthClient(MarketplaceOAuthClient):
    """
    OAuth client for Shopee.

    Implements TokenRefresher for the lifecycle manager.
    """

    platform = Platform.SHOPEE

    def __init__(
        self,
        settings: ShopeeSettings,
        signer: RequestSigner,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ):
        super().__init__(http_client=http_client, timeout=timeout)
        self.settings = settings
        self.signer = signer
        self.clock = clock

    def build_authorize_url(self, redirect: Optional[str] = None) -> str:
        """Public-signed shop authorization URL; valid for the signing window only."""
        request = self.signer.sign_public(
            Platform.SHOPEE,
            AUTH_PARTNER_PATH,
            params={"redirect": redirect or self.settings.redirect_uri},
        )
        return str(httpx.URL(request.url, params=request.params))

    async def exchange_code(self, code: str, shop_id: Union[int, str]) -> TokenGrant:
        """
        Exchange an authorization code for a shop's tokens.

        Raises:
            AuthorizationExchangeError: If Shopee rejects the code or is unreachable
        """
        if not code or not shop_id:
            raise AuthorizationExchangeError(
                "Authorization code and shop_id are required",
                platform=self.platform.value,
            )

        request = self.signer.sign_public(
            Platform.SHOPEE,
            TOKEN_GET_PATH,
            body={"code": code, "shop_id": int(shop_id), "partner_id": self.settings.partner_id},
            method="POST",
        )
        _, body = await self._send_for_authorization(request)

        try:
            response = ShopeeTokenResponse.model_validate(body)
        except ValidationError as e:
            raise AuthorizationExchangeError(
                "Shopee returned an unexpected response",
                platform=self.platform.value,
                status_code=502,
            ) from e

        if response.error or not response.access_token or not response.expire_in:
            logger.warning(
                "Shopee rejected authorization code",
                extra={"platform_error": response.error, "request_id": response.request_id},
            )
            raise AuthorizationExchangeError(
                f"Shopee token exchange failed: {response.message or response.error or 'no access token'}",
                platform=self.platform.value,
            )

        return self._to_grant(response, shop_id=str(shop_id))

    async def refresh(
        self,
        refresh_token: str,
        shop_id: Optional[Union[int, str]] = None,
        merchant_id: Optional[Union[int, str]] = None,
    ) -> TokenGrant:
        """
        Refresh a shop- or merchant-level access token.

        Raises:
            SignatureError: If neither or both of shop_id and merchant_id are given
            RefreshRejectedError: Shopee says the refresh token is unusable
            RefreshTransientError: Anything else
        """
        if bool(shop_id) == bool(merchant_id):
            raise SignatureError("Shopee refresh needs exactly one of shop_id or merchant_id")

        payload = {"refresh_token": refresh_token, "partner_id": self.settings.partner_id}
        if shop_id:
            payload["shop_id"] = int(shop_id)
        else:
            payload["merchant_id"] = int(merchant_id)

        request = self.signer.sign_public(
            Platform.SHOPEE,
            ACCESS_TOKEN_GET_PATH,
            body=payload,
            method="POST",
        )
        status_code, body = await self._send(request)

        try:
            response = ShopeeTokenResponse.model_validate(body)
        except ValidationError as e:
            raise RefreshTransientError(
                message="Shopee returned an unexpected response",
                platform=self.platform.value,
                upstream_status=status_code,
            ) from e

        if response.error:
            if is_rejected_refresh_error(response.error, response.message):
                raise RefreshRejectedError(
                    platform=self.platform.value,
                    shop_id=str(shop_id) if shop_id else None,
                    platform_error=f"{response.error}: {response.message}",
                )
            raise RefreshTransientError(
                message=f"Shopee token refresh failed: {response.error}",
                platform=self.platform.value,
                upstream_status=status_code,
            )

        if not response.access_token or not response.expire_in:
            raise RefreshTransientError(
                message="Shopee refresh response has no access token",
                platform=self.platform.value,
                upstream_status=status_code,
            )

        return self._to_grant(
            response,
            shop_id=str(shop_id) if shop_id else None,
            merchant_id=str(merchant_id) if merchant_id else None,
        )

    async def refresh_credential(self, credential: Credential) -> TokenGrant:
        if not credential.refresh_token:
            raise RefreshRejectedError(platform=self.platform.value, shop_id=credential.shop_id)
        return await self.refresh(
            credential.refresh_token,
            shop_id=credential.shop_id,
            merchant_id=None if credential.shop_id else getattr(credential, "merchant_id", None),
        )

    def _to_grant(
        self,
        response: ShopeeTokenResponse,
        shop_id: Optional[str] = None,
        merchant_id: Optional[str] = None,
    ) -> TokenGrant:
        return TokenGrant(
            access_token=response.access_token,
            expires_at=self.clock() + timedelta(seconds=response.expire_in),
            refresh_token=response.refresh_token or None,
            shop_id=shop_id,
            merchant_id=merchant_id,
        )
