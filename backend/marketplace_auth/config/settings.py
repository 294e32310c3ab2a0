"""
Process configuration for the marketplace credential core.

All values come from environment variables. Required variables are validated
together at startup so the process fails fast with one error naming every
missing value, instead of failing on the first outbound call.

SECURITY:
- Secrets (app secret, partner key, encryption key) never appear in repr()
- The encryption key is decoded during loading so a bad key stops startup
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from marketplace_auth.database import normalize_database_url
from marketplace_auth.platform.errors import ConfigurationError
from marketplace_auth.utils.encryption import decode_key_string

REQUIRED_ENV_VARS = (
    "TIKTOK_APP_KEY",
    "TIKTOK_APP_SECRET",
    "TIKTOK_REDIRECT_URI",
    "TIKTOK_API_URL",
    "SHOPEE_PARTNER_ID",
    "SHOPEE_PARTNER_KEY",
    "SHOPEE_REDIRECT_URI",
    "SHOPEE_API_URL",
    "TOKEN_ENCRYPTION_KEY",
)

DEFAULT_TIKTOK_AUTH_URL = "https://auth.tiktok-shops.com"
DEFAULT_DATABASE_URL = "sqlite:///./marketplace_auth.db"

# On-demand checks refresh when less than this remains
DEFAULT_SAFETY_MARGIN_SECONDS = 300
# Background scheduler cadence and look-ahead window
DEFAULT_REFRESH_INTERVAL_SECONDS = 600
DEFAULT_REFRESH_THRESHOLD_MINUTES = 60
# Per-call HTTP timeout and overall bound on one refresh-and-persist sequence
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_REFRESH_TIMEOUT_SECONDS = 45.0


@dataclass(frozen=True)
class TikTokSettings:
    app_key: str
    app_secret: str = field(repr=False)
    redirect_uri: str
    api_url: str
    auth_url: str = DEFAULT_TIKTOK_AUTH_URL
    scopes: str = ""


@dataclass(frozen=True)
class ShopeeSettings:
    partner_id: int
    partner_key: str = field(repr=False)
    redirect_uri: str
    api_url: str


@dataclass(frozen=True)
class TokenPolicySettings:
    safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN_SECONDS
    refresh_interval_seconds: int = DEFAULT_REFRESH_INTERVAL_SECONDS
    refresh_threshold_minutes: int = DEFAULT_REFRESH_THRESHOLD_MINUTES
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    refresh_timeout_seconds: float = DEFAULT_REFRESH_TIMEOUT_SECONDS


@dataclass(frozen=True)
class MarketplaceSettings:
    tiktok: TikTokSettings
    shopee: ShopeeSettings
    encryption_key: bytes = field(repr=False)
    database_url: str = field(default=DEFAULT_DATABASE_URL, repr=False)
    token_policy: TokenPolicySettings = field(default_factory=TokenPolicySettings)


def _parse_int(environ: Mapping[str, str], name: str, default: int, errors: list[str]) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        errors.append(f"{name} must be an integer")
        return default
    if value <= 0:
        errors.append(f"{name} must be positive")
    return value


def _parse_float(environ: Mapping[str, str], name: str, default: float, errors: list[str]) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        errors.append(f"{name} must be a number")
        return default
    if value <= 0:
        errors.append(f"{name} must be positive")
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> MarketplaceSettings:
    """
    Load and validate settings from the environment.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        MarketplaceSettings

    Raises:
        ConfigurationError: If any required variable is missing or malformed
    """
    if environ is None:
        environ = os.environ

    missing = [name for name in REQUIRED_ENV_VARS if not environ.get(name)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}",
            missing=missing,
        )

    errors: list[str] = []

    try:
        partner_id = int(environ["SHOPEE_PARTNER_ID"])
    except ValueError:
        errors.append("SHOPEE_PARTNER_ID must be an integer")
        partner_id = 0

    token_policy = TokenPolicySettings(
        safety_margin_seconds=_parse_int(
            environ, "TOKEN_SAFETY_MARGIN_SECONDS", DEFAULT_SAFETY_MARGIN_SECONDS, errors
        ),
        refresh_interval_seconds=_parse_int(
            environ, "TOKEN_REFRESH_INTERVAL_SECONDS", DEFAULT_REFRESH_INTERVAL_SECONDS, errors
        ),
        refresh_threshold_minutes=_parse_int(
            environ, "TOKEN_REFRESH_THRESHOLD_MINUTES", DEFAULT_REFRESH_THRESHOLD_MINUTES, errors
        ),
        http_timeout_seconds=_parse_float(
            environ, "MARKETPLACE_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS, errors
        ),
        refresh_timeout_seconds=_parse_float(
            environ, "TOKEN_REFRESH_TIMEOUT_SECONDS", DEFAULT_REFRESH_TIMEOUT_SECONDS, errors
        ),
    )

    if errors:
        raise ConfigurationError("; ".join(errors))

    # Raises ConfigurationError on a key that is not 32 bytes
    encryption_key = decode_key_string(environ["TOKEN_ENCRYPTION_KEY"])

    database_url = normalize_database_url(environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL)

    return MarketplaceSettings(
        tiktok=TikTokSettings(
            app_key=environ["TIKTOK_APP_KEY"],
            app_secret=environ["TIKTOK_APP_SECRET"],
            redirect_uri=environ["TIKTOK_REDIRECT_URI"],
            api_url=environ["TIKTOK_API_URL"].rstrip("/"),
            auth_url=(environ.get("TIKTOK_AUTH_URL") or DEFAULT_TIKTOK_AUTH_URL).rstrip("/"),
            scopes=environ.get("TIKTOK_SCOPES", ""),
        ),
        shopee=ShopeeSettings(
            partner_id=partner_id,
            partner_key=environ["SHOPEE_PARTNER_KEY"],
            redirect_uri=environ["SHOPEE_REDIRECT_URI"],
            api_url=environ["SHOPEE_API_URL"].rstrip("/"),
        ),
        encryption_key=encryption_key,
        database_url=database_url,
        token_policy=token_policy,
    )
