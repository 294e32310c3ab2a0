"""
Request signer: turns a credential plus an API call into a ready-to-send
request descriptor.

The timestamp is taken from the injected clock at signing time, never from
the caller, so a descriptor is only valid for the platforms' +/-5 minute
window. Sign immediately before sending.

Usage:
    signer = RequestSigner(settings.tiktok, settings.shopee)
    credential = await lifecycle.get_valid_credential(Platform.TIKTOK, shop_id)
    request = signer.sign_request(credential, "POST", "/order/202309/orders/search",
                                  params={"page_size": "20"}, body={})
    response = await client.request(**request.to_httpx_kwargs())
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from marketplace_auth.config.settings import ShopeeSettings, TikTokSettings
from marketplace_auth.credentials.redaction import redact_credential_data
from marketplace_auth.credentials.types import (
    Credential,
    Platform,
    ShopeeCredential,
    TikTokCredential,
)
from marketplace_auth.platform.errors import SignatureError
from marketplace_auth.signing.engine import (
    EXCLUDED_PARAMS,
    Body,
    SignatureEngine,
    SigningContext,
    serialize_body,
)
from marketplace_auth.utils.clock import Clock, epoch_seconds, utc_now

TIKTOK_ACCESS_TOKEN_HEADER = "x-tts-access-token"

TIMESTAMP_TOLERANCE_SECONDS = 300


def is_timestamp_fresh(timestamp: int, now: int, tolerance: int = TIMESTAMP_TOLERANCE_SECONDS) -> bool:
    """True if a signing timestamp is inside the platforms' accepted window."""
    return abs(now - int(timestamp)) <= tolerance


@dataclass(frozen=True)
class SignedRequest:
    method: str
    url: str
    params: dict[str, str]
    headers: dict[str, str] = field(default_factory=dict)
    json_body: Any = None
    # Exact body text covered by the signature
    content: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"SignedRequest(method={self.method!r}, url={self.url!r}, "
            f"params={redact_credential_data(self.params)!r})"
        )

    @property
    def timestamp(self) -> int:
        return int(self.params["timestamp"])

    def to_httpx_kwargs(self) -> dict:
        kwargs: dict[str, Any] = {
            "method": self.method,
            "url": self.url,
            "params": self.params,
            "headers": self.headers,
        }
        if self.content is not None:
            kwargs["content"] = self.content.encode("utf-8")
        return kwargs


class RequestSigner:
    """Composes the signature engine with credential snapshots."""

    def __init__(
        self,
        tiktok: TikTokSettings,
        shopee: ShopeeSettings,
        engine: Optional[SignatureEngine] = None,
        clock: Clock = utc_now,
    ):
        self.tiktok = tiktok
        self.shopee = shopee
        self.engine = engine or SignatureEngine()
        self.clock = clock

    def sign_request(
        self,
        credential: Credential,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Body = None,
    ) -> SignedRequest:
        """
        Sign an authenticated business API call.

        Raises:
            SignatureError: If the credential cannot authenticate the call
        """
        if not credential.access_token:
            raise SignatureError(
                "Credential has no access token",
                details={"credential_id": credential.id},
            )

        if isinstance(credential, TikTokCredential):
            return self._sign_tiktok(method, path, params, body, credential)
        if isinstance(credential, ShopeeCredential):
            return self._sign_shopee(method, path, params, body, credential)
        raise SignatureError(f"Unsupported credential type: {type(credential).__name__}")

    def sign_public(
        self,
        platform: Platform,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Body = None,
        method: str = "GET",
        base_url: Optional[str] = None,
    ) -> SignedRequest:
        """Sign a call that carries no access token (authorization endpoints)."""
        if platform == Platform.TIKTOK:
            return self._sign_tiktok(method, path, params, body, None, base_url)
        if platform == Platform.SHOPEE:
            return self._sign_shopee(method, path, params, body, None, base_url)
        raise SignatureError(f"Unsupported platform: {platform}")

    def _sign_tiktok(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]],
        body: Body,
        credential: Optional[TikTokCredential],
        base_url: Optional[str] = None,
    ) -> SignedRequest:
        signed_params = {
            key: str(value)
            for key, value in (params or {}).items()
            if key not in EXCLUDED_PARAMS and value is not None
        }
        signed_params["app_key"] = self.tiktok.app_key
        signed_params["timestamp"] = str(epoch_seconds(self.clock()))
        if credential and credential.shop_cipher and "shop_cipher" not in signed_params:
            signed_params["shop_cipher"] = credential.shop_cipher

        content = serialize_body(body) if body is not None else None
        signed_params["sign"] = self.engine.sign(
            Platform.TIKTOK, path, signed_params, content, self.tiktok.app_secret
        )

        headers = {}
        if content is not None:
            headers["content-type"] = "application/json"
        if credential:
            headers[TIKTOK_ACCESS_TOKEN_HEADER] = credential.access_token

        return SignedRequest(
            method=method.upper(),
            url=(base_url or self.tiktok.api_url) + path,
            params=signed_params,
            headers=headers,
            json_body=body,
            content=content,
        )

    def _sign_shopee(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]],
        body: Body,
        credential: Optional[ShopeeCredential],
        base_url: Optional[str] = None,
    ) -> SignedRequest:
        timestamp = epoch_seconds(self.clock())
        context = SigningContext(timestamp=timestamp, partner_id=self.shopee.partner_id)
        if credential:
            if credential.shop_id:
                context = SigningContext(
                    timestamp=timestamp,
                    partner_id=self.shopee.partner_id,
                    access_token=credential.access_token,
                    shop_id=credential.shop_id,
                )
            elif credential.merchant_id:
                context = SigningContext(
                    timestamp=timestamp,
                    partner_id=self.shopee.partner_id,
                    access_token=credential.access_token,
                    merchant_id=credential.merchant_id,
                )
            else:
                raise SignatureError(
                    "Shopee credential has neither shop_id nor merchant_id",
                    details={"credential_id": credential.id},
                )

        signed_params = {
            key: str(value)
            for key, value in (params or {}).items()
            if key not in EXCLUDED_PARAMS and value is not None
        }
        signed_params["partner_id"] = str(self.shopee.partner_id)
        signed_params["timestamp"] = str(timestamp)
        signed_params["sign"] = self.engine.sign(
            Platform.SHOPEE, path, None, None, self.shopee.partner_key, context
        )
        if context.access_token:
            signed_params["access_token"] = context.access_token
        if context.shop_id:
            signed_params["shop_id"] = str(context.shop_id)
        if context.merchant_id:
            signed_params["merchant_id"] = str(context.merchant_id)

        content = serialize_body(body) if body is not None else None
        headers = {"content-type": "application/json"} if content is not None else {}

        return SignedRequest(
            method=method.upper(),
            url=(base_url or self.shopee.api_url) + path,
            params=signed_params,
            headers=headers,
            json_body=body,
            content=content,
        )
