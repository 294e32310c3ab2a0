"""
TikTok Shop OAuth client.

Handles:
- Building the seller authorization URL
- Exchanging an authorization code for tokens
- Refreshing access tokens
- Listing the shops an access token is authorized for

Token endpoints live on the auth host (auth.tiktok-shops.com); the shop list
lives on the Open API host. Responses use the envelope {code, message, data}
where code == 0 is success.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from marketplace_auth.config.settings import TikTokSettings
from marketplace_auth.credentials.types import (
    Credential,
    Platform,
    ShopLink,
    TokenGrant,
)
from marketplace_auth.integrations.base import DEFAULT_TIMEOUT_SECONDS, MarketplaceOAuthClient
from marketplace_auth.platform.errors import (
    AuthorizationExchangeError,
    RefreshRejectedError,
    RefreshTransientError,
)
from marketplace_auth.signing.signer import TIKTOK_ACCESS_TOKEN_HEADER, RequestSigner
from marketplace_auth.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_GET_PATH = "/api/v2/token/get"
TOKEN_REFRESH_PATH = "/api/v2/token/refresh"
AUTHORIZED_SHOPS_PATH = "/authorization/202309/shops"

# Values above this are epoch timestamps, below it lifetimes in seconds
_EPOCH_THRESHOLD = 1_000_000_000

# Message fragments TikTok uses when a refresh token can no longer be used
_REJECTED_MARKERS = ("invalid", "expired", "revoked")


class TikTokEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: int
    message: str = ""
    request_id: Optional[str] = None
    data: Optional[dict] = None


class TikTokTokenData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    access_token_expire_in: int = Field(gt=0)
    refresh_token: Optional[str] = None
    refresh_token_expire_in: Optional[int] = None
    open_id: Optional[str] = None
    seller_name: Optional[str] = None
    seller_base_region: Optional[str] = None
    granted_scopes: list[str] = Field(default_factory=list)


class TikTokShop(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Union[str, int]
    cipher: Optional[str] = None
    code: Optional[str] = None
    name: Optional[str] = None
    region: Optional[str] = None
    seller_type: Optional[str] = None


def _expiry(value: Optional[int], now: datetime) -> Optional[datetime]:
    if not value:
        return None
    if value >= _EPOCH_THRESHOLD:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return now + timedelta(seconds=value)


def is_rejected_refresh_message(message: str) -> bool:
    """True when a TikTok error message says the refresh token itself is unusable."""
    text = (message or "").lower()
    return "refresh" in text and "token" in text and any(marker in text for marker in _REJECTED_MARKERS)


class TikTokOAuthClient(MarketplaceOAuthClient):
    """
    OAuth client for TikTok Shop.

    Implements TokenRefresher for the lifecycle manager.
    """

    platform = Platform.TIKTOK

    def __init__(
        self,
        settings: TikTokSettings,
        signer: RequestSigner,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ):
        super().__init__(http_client=http_client, timeout=timeout)
        self.settings = settings
        self.signer = signer
        self.clock = clock

    def build_authorize_url(self, state: str) -> str:
        query = urlencode({
            "app_key": self.settings.app_key,
            "state": state,
            "redirect_uri": self.settings.redirect_uri,
        })
        return f"{self.settings.auth_url}{AUTHORIZE_PATH}?{query}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """
        Exchange an authorization code for tokens.

        Raises:
            AuthorizationExchangeError: If TikTok rejects the code or is unreachable
        """
        if not code:
            raise AuthorizationExchangeError("Authorization code is required", platform=self.platform.value)

        request = self.signer.sign_public(
            Platform.TIKTOK,
            TOKEN_GET_PATH,
            params={
                "app_secret": self.settings.app_secret,
                "auth_code": code,
                "grant_type": "authorized_code",
            },
            base_url=self.settings.auth_url,
        )
        _, body = await self._send_for_authorization(request)

        envelope = self._parse_envelope(body, AuthorizationExchangeError)
        if envelope.code != 0:
            logger.warning(
                "TikTok rejected authorization code",
                extra={"platform_code": envelope.code, "request_id": envelope.request_id},
            )
            raise AuthorizationExchangeError(
                f"TikTok token exchange failed: {envelope.message or envelope.code}",
                platform=self.platform.value,
            )

        try:
            data = TikTokTokenData.model_validate(envelope.data or {})
        except ValidationError as e:
            raise AuthorizationExchangeError(
                "TikTok token response is missing required fields",
                platform=self.platform.value,
                status_code=502,
            ) from e

        if not data.open_id:
            raise AuthorizationExchangeError(
                "TikTok token response has no open_id",
                platform=self.platform.value,
                status_code=502,
            )

        return self._to_grant(data)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """
        Refresh an access token.

        Raises:
            RefreshRejectedError: TikTok says the refresh token is invalid, expired or revoked
            RefreshTransientError: Anything else
        """
        request = self.signer.sign_public(
            Platform.TIKTOK,
            TOKEN_REFRESH_PATH,
            params={
                "app_secret": self.settings.app_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            base_url=self.settings.auth_url,
        )
        status_code, body = await self._send(request)

        envelope = self._parse_envelope(body, RefreshTransientError)
        if envelope.code != 0:
            if is_rejected_refresh_message(envelope.message):
                raise RefreshRejectedError(
                    platform=self.platform.value,
                    platform_error=f"{envelope.code}: {envelope.message}",
                )
            raise RefreshTransientError(
                message=f"TikTok token refresh failed: {envelope.code}",
                platform=self.platform.value,
                upstream_status=status_code,
            )

        try:
            data = TikTokTokenData.model_validate(envelope.data or {})
        except ValidationError as e:
            raise RefreshTransientError(
                message="TikTok refresh response is missing required fields",
                platform=self.platform.value,
                upstream_status=status_code,
            ) from e

        return self._to_grant(data)

    async def refresh_credential(self, credential: Credential) -> TokenGrant:
        if not credential.refresh_token:
            raise RefreshRejectedError(platform=self.platform.value, shop_id=credential.shop_id)
        return await self.refresh(credential.refresh_token)

    async def fetch_authorized_shops(self, access_token: str) -> list[ShopLink]:
        """
        List the shops the access token is authorized for.

        Raises:
            AuthorizationExchangeError: If the shop list cannot be read
        """
        request = self.signer.sign_public(Platform.TIKTOK, AUTHORIZED_SHOPS_PATH)
        request.headers[TIKTOK_ACCESS_TOKEN_HEADER] = access_token
        _, body = await self._send_for_authorization(request)

        envelope = self._parse_envelope(body, AuthorizationExchangeError)
        if envelope.code != 0:
            raise AuthorizationExchangeError(
                f"TikTok shop lookup failed: {envelope.message or envelope.code}",
                platform=self.platform.value,
                status_code=502,
            )

        shops = []
        for raw in (envelope.data or {}).get("shops") or []:
            try:
                shop = TikTokShop.model_validate(raw)
            except ValidationError:
                logger.warning("Skipping malformed TikTok shop entry")
                continue
            shops.append(ShopLink(
                shop_id=str(shop.id),
                shop_cipher=shop.cipher,
                shop_name=shop.name,
                shop_region=shop.region,
            ))
        return shops

    def _parse_envelope(self, body: dict, error_cls: type) -> TikTokEnvelope:
        try:
            return TikTokEnvelope.model_validate(body)
        except ValidationError as e:
            if error_cls is AuthorizationExchangeError:
                raise AuthorizationExchangeError(
                    "TikTok returned an unexpected response",
                    platform=self.platform.value,
                    status_code=502,
                ) from e
            raise RefreshTransientError(
                message="TikTok returned an unexpected response",
                platform=self.platform.value,
            ) from e

    def _to_grant(self, data: TikTokTokenData) -> TokenGrant:
        now = self.clock()
        return TokenGrant(
            access_token=data.access_token,
            expires_at=_expiry(data.access_token_expire_in, now),
            refresh_token=data.refresh_token or None,
            refresh_token_expires_at=_expiry(data.refresh_token_expire_in, now),
            external_account_id=data.open_id,
            seller_name=data.seller_name,
            region=data.seller_base_region,
            granted_scopes=tuple(data.granted_scopes),
        )
