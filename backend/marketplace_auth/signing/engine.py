"""
Per-platform request signature computation.

Both platforms sign with HMAC-SHA256 keyed by the shared secret and
hex-encode the digest. They differ in the base string:

TikTok Shop:
    secret + path + key1 + value1 + key2 + value2 ... + body + secret
    (query params sorted by key, excluding sign and access_token)

Shopee:
    public:   partner_id + path + timestamp
    shop:     partner_id + path + timestamp + access_token + shop_id
    merchant: partner_id + path + timestamp + access_token + merchant_id

Signing is a pure function of its inputs. The caller injects the timestamp;
the engine never reads the clock.
"""

import hashlib
import hmac
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

from marketplace_auth.credentials.types import Platform
from marketplace_auth.platform.errors import SignatureError

# Never part of the signed parameter set
EXCLUDED_PARAMS = frozenset({"sign", "access_token"})

Body = Union[str, bytes, Mapping[str, Any], list, None]


class ShopeeScope(str, Enum):
    PUBLIC = "public"
    SHOP = "shop"
    MERCHANT = "merchant"


@dataclass(frozen=True)
class SigningContext:
    """
    Per-call values that enter a signature besides path, params and body.

    Shopee uses all of them; TikTok only uses the params it is given.
    """
    timestamp: Optional[int] = None
    partner_id: Optional[int] = None
    access_token: Optional[str] = None
    shop_id: Optional[str] = None
    merchant_id: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"SigningContext(timestamp={self.timestamp}, partner_id={self.partner_id}, "
            f"shop_id={self.shop_id}, merchant_id={self.merchant_id})"
        )

    @property
    def shopee_scope(self) -> ShopeeScope:
        if self.shop_id and self.merchant_id:
            raise SignatureError("Shopee calls are either shop-scoped or merchant-scoped, not both")
        if self.shop_id:
            return ShopeeScope.SHOP
        if self.merchant_id:
            return ShopeeScope.MERCHANT
        return ShopeeScope.PUBLIC


def serialize_body(body: Body) -> str:
    """Render a request body exactly as it is sent (compact JSON for objects)."""
    if body is None:
        return ""
    if isinstance(body, bytes):
        return body.decode("utf-8")
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def _param_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def hmac_sha256_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def tiktok_base_string(path: str, params: Mapping[str, Any], body: Body, secret: str) -> str:
    param_string = "".join(
        key + _param_value(params[key])
        for key in sorted(params)
        if key not in EXCLUDED_PARAMS and params[key] is not None
    )
    return secret + path + param_string + serialize_body(body) + secret


def shopee_base_string(
    partner_id: int,
    path: str,
    timestamp: int,
    access_token: Optional[str] = None,
    shop_id: Optional[str] = None,
    merchant_id: Optional[str] = None,
) -> str:
    scope = SigningContext(shop_id=shop_id, merchant_id=merchant_id).shopee_scope
    base = f"{partner_id}{path}{timestamp}"
    if scope == ShopeeScope.PUBLIC:
        return base
    if not access_token:
        raise SignatureError(f"Shopee {scope.value}-scoped calls require an access token")
    return base + access_token + str(shop_id if scope == ShopeeScope.SHOP else merchant_id)


class SignatureEngine:
    """Stateless signer for both marketplaces."""

    def sign(
        self,
        platform: Platform,
        path: str,
        params: Optional[Mapping[str, Any]],
        body: Body,
        secret: str,
        context: Optional[SigningContext] = None,
    ) -> str:
        """
        Compute the hex signature for one request.

        Raises:
            SignatureError: On inputs that cannot produce a valid signature
        """
        if not secret:
            raise SignatureError("Signing secret is empty", details={"platform": platform.value})
        if not path or not path.startswith("/"):
            raise SignatureError("API path must start with '/'", details={"path": path})

        context = context or SigningContext()

        if platform == Platform.TIKTOK:
            return hmac_sha256_hex(secret, tiktok_base_string(path, params or {}, body, secret))

        if platform == Platform.SHOPEE:
            if context.partner_id is None:
                raise SignatureError("Shopee signatures require partner_id")
            if context.timestamp is None:
                raise SignatureError("Shopee signatures require a timestamp")
            base = shopee_base_string(
                partner_id=context.partner_id,
                path=path,
                timestamp=context.timestamp,
                access_token=context.access_token,
                shop_id=context.shop_id,
                merchant_id=context.merchant_id,
            )
            return hmac_sha256_hex(secret, base)

        raise SignatureError(f"Unsupported platform: {platform}")
