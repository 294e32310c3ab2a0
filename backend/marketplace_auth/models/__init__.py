from marketplace_auth.models.base import TimestampMixin
from marketplace_auth.models.marketplace_credential import (
    CredentialPlatform,
    CredentialStatus,
    MarketplaceCredential,
)

__all__ = [
    "TimestampMixin",
    "CredentialPlatform",
    "CredentialStatus",
    "MarketplaceCredential",
]
