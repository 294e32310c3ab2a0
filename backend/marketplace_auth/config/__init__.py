"""Configuration module for the marketplace credential core."""

from marketplace_auth.config.settings import (
    MarketplaceSettings,
    ShopeeSettings,
    TikTokSettings,
    TokenPolicySettings,
    load_settings,
)

__all__ = [
    "MarketplaceSettings",
    "ShopeeSettings",
    "TikTokSettings",
    "TokenPolicySettings",
    "load_settings",
]
