"""
Decrypted credential snapshots.

A credential read from the store is one of two immutable variants, each
carrying only the fields its platform produces. Token fields are excluded
from repr() so a snapshot can be logged safely by accident.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional, Union

from marketplace_auth.models.marketplace_credential import (
    CredentialPlatform as Platform,
    CredentialStatus,
)


@dataclass(frozen=True)
class TikTokCredential:
    platform: ClassVar[Platform] = Platform.TIKTOK

    id: int
    external_account_id: str
    status: CredentialStatus
    version: int
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    shop_id: Optional[str] = None
    shop_cipher: Optional[str] = None
    shop_name: Optional[str] = None
    shop_region: Optional[str] = None
    seller_name: Optional[str] = None
    region: Optional[str] = None
    granted_scopes: tuple[str, ...] = ()
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class ShopeeCredential:
    platform: ClassVar[Platform] = Platform.SHOPEE

    id: int
    external_account_id: str
    status: CredentialStatus
    version: int
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    shop_id: Optional[str] = None
    merchant_id: Optional[str] = None
    shop_name: Optional[str] = None
    region: Optional[str] = None
    updated_at: Optional[datetime] = None


Credential = Union[TikTokCredential, ShopeeCredential]


@dataclass(frozen=True)
class TokenGrant:
    """
    Result of an authorization-code exchange or a refresh.

    refresh_token is None when the platform did not rotate it; the store then
    keeps the previous one.
    """
    access_token: str = field(repr=False)
    expires_at: datetime
    refresh_token: Optional[str] = field(default=None, repr=False)
    refresh_token_expires_at: Optional[datetime] = None
    external_account_id: Optional[str] = None
    seller_name: Optional[str] = None
    region: Optional[str] = None
    granted_scopes: tuple[str, ...] = ()
    shop_id: Optional[str] = None
    merchant_id: Optional[str] = None


@dataclass(frozen=True)
class ShopLink:
    """A shop resolved after authorization."""
    shop_id: str
    shop_cipher: Optional[str] = None
    shop_name: Optional[str] = None
    shop_region: Optional[str] = None


def credential_type_for(platform: Platform) -> type:
    if platform == Platform.TIKTOK:
        return TikTokCredential
    return ShopeeCredential
