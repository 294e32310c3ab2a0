"""
MarketplaceCredential model - encrypted OAuth credentials for marketplace shops.

SECURITY REQUIREMENTS:
- access_token_encrypted / refresh_token_encrypted hold ENC:: envelopes
- Legacy rows may still hold plaintext until migrated
- Token columns are never included in repr() or to_safe_dict()

One row per (platform, external_account_id). Rows are never hard-deleted here;
unrecoverable refresh failures move the row to inactive.
"""

import enum

from sqlalchemy import (
    Column, String, DateTime, Text, Integer, Enum, Index, UniqueConstraint,
)

from marketplace_auth.db_base import Base
from marketplace_auth.models.base import TimestampMixin


class CredentialPlatform(str, enum.Enum):
    """Supported marketplaces."""
    TIKTOK = "tiktok"
    SHOPEE = "shopee"


class CredentialStatus(str, enum.Enum):
    """Credential lifecycle status."""
    PENDING = "pending"  # Authorized, shop not yet resolved
    ACTIVE = "active"
    INACTIVE = "inactive"  # Refresh token rejected, re-authorization required


class MarketplaceCredential(Base, TimestampMixin):
    """
    Durable credential record.

    Only CredentialStore reads and writes this model. Everything outside the
    store works with the decrypted, immutable snapshots in
    marketplace_auth.credentials.types.
    """

    __tablename__ = "marketplace_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)

    platform = Column(
        Enum(CredentialPlatform),
        nullable=False,
        comment="Marketplace this credential authenticates against",
    )
    external_account_id = Column(
        String(255),
        nullable=False,
        comment="Platform-issued account id (TikTok open_id, shopee_<shop_id>)",
    )

    # Shop resolution
    shop_id = Column(String(255), nullable=True, comment="Shop controlled by this credential")
    merchant_id = Column(String(255), nullable=True, comment="Shopee merchant id (merchant-scoped calls)")
    shop_cipher = Column(String(255), nullable=True, comment="TikTok shop cipher for signed calls")
    shop_name = Column(String(255), nullable=True, comment="Display name (allowed in logs)")
    shop_region = Column(String(32), nullable=True)
    seller_name = Column(String(255), nullable=True, comment="Display name (allowed in logs)")
    region = Column(String(32), nullable=True, comment="Seller base region")
    granted_scopes = Column(Text, nullable=True, comment="JSON array of granted scopes")

    # Encrypted tokens - NEVER log these values
    access_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted access token - NEVER log plaintext",
    )
    refresh_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted refresh token - NEVER log plaintext",
    )

    # Token metadata (safe to log)
    expires_at = Column(DateTime(timezone=True), nullable=True, comment="Access token expiry")
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(
        Enum(CredentialStatus),
        default=CredentialStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Refresh bookkeeping
    refresh_failure_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True, comment="Last refresh error (sanitized)")

    # Optimistic concurrency, bumped on every token write
    version = Column(Integer, default=1, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "platform", "external_account_id",
            name="uq_marketplace_credentials_platform_account",
        ),
        Index("ix_marketplace_credentials_platform_shop", "platform", "shop_id"),
        Index("ix_marketplace_credentials_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include token values."""
        return (
            f"<MarketplaceCredential("
            f"id={self.id}, "
            f"platform={self.platform}, "
            f"shop_id={self.shop_id}, "
            f"status={self.status})>"
        )

    def to_safe_dict(self) -> dict:
        """
        Return dictionary safe for logging.

        SECURITY: Excludes all token values.
        """
        return {
            "id": self.id,
            "platform": self.platform.value if self.platform else None,
            "external_account_id": self.external_account_id,
            "shop_id": self.shop_id,
            "shop_name": self.shop_name,
            "status": self.status.value if self.status else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "refresh_failure_count": self.refresh_failure_count,
            "version": self.version,
        }
