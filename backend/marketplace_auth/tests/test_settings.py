"""
Tests for environment configuration loading.
"""

import base64

import pytest

from marketplace_auth.config.settings import (
    DEFAULT_DATABASE_URL,
    REQUIRED_ENV_VARS,
    load_settings,
)
from marketplace_auth.platform.errors import ConfigurationError

KEY = bytes(range(32))


@pytest.fixture
def environ() -> dict:
    return {
        "TIKTOK_APP_KEY": "app-key",
        "TIKTOK_APP_SECRET": "app-secret",
        "TIKTOK_REDIRECT_URI": "https://app.example.com/tiktok/callback",
        "TIKTOK_API_URL": "https://open-api.tiktokglobalshop.com/",
        "SHOPEE_PARTNER_ID": "1000",
        "SHOPEE_PARTNER_KEY": "partner-key",
        "SHOPEE_REDIRECT_URI": "https://app.example.com/shopee/callback",
        "SHOPEE_API_URL": "https://partner.shopeemobile.com",
        "TOKEN_ENCRYPTION_KEY": base64.b64encode(KEY).decode(),
    }


class TestLoadSettings:

    def test_loads_required_values(self, environ):
        settings = load_settings(environ)

        assert settings.tiktok.app_key == "app-key"
        assert settings.tiktok.api_url == "https://open-api.tiktokglobalshop.com"
        assert settings.tiktok.auth_url == "https://auth.tiktok-shops.com"
        assert settings.shopee.partner_id == 1000
        assert settings.encryption_key == KEY
        assert settings.database_url == DEFAULT_DATABASE_URL

    def test_defaults_for_token_policy(self, environ):
        policy = load_settings(environ).token_policy

        assert policy.safety_margin_seconds == 300
        assert policy.refresh_interval_seconds == 600
        assert policy.refresh_threshold_minutes == 60

    def test_overrides(self, environ):
        environ.update({
            "TOKEN_SAFETY_MARGIN_SECONDS": "120",
            "TOKEN_REFRESH_INTERVAL_SECONDS": "60",
            "MARKETPLACE_HTTP_TIMEOUT_SECONDS": "12.5",
            "DATABASE_URL": "postgres://user:pass@db/marketplace",
            "TIKTOK_AUTH_URL": "https://auth.example.com/",
        })

        settings = load_settings(environ)

        assert settings.token_policy.safety_margin_seconds == 120
        assert settings.token_policy.refresh_interval_seconds == 60
        assert settings.token_policy.http_timeout_seconds == 12.5
        assert settings.database_url == "postgresql://user:pass@db/marketplace"
        assert settings.tiktok.auth_url == "https://auth.example.com"

    def test_all_missing_variables_reported_together(self, environ):
        del environ["TIKTOK_APP_SECRET"]
        environ["TOKEN_ENCRYPTION_KEY"] = ""

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(environ)

        assert exc_info.value.missing == ["TIKTOK_APP_SECRET", "TOKEN_ENCRYPTION_KEY"]
        assert "TIKTOK_APP_SECRET" in exc_info.value.message

    def test_empty_environment(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings({})
        assert exc_info.value.missing == list(REQUIRED_ENV_VARS)

    def test_non_integer_partner_id(self, environ):
        environ["SHOPEE_PARTNER_ID"] = "abc"
        with pytest.raises(ConfigurationError, match="SHOPEE_PARTNER_ID must be an integer"):
            load_settings(environ)

    def test_non_positive_interval(self, environ):
        environ["TOKEN_REFRESH_INTERVAL_SECONDS"] = "0"
        with pytest.raises(ConfigurationError, match="must be positive"):
            load_settings(environ)

    def test_bad_encryption_key(self, environ):
        environ["TOKEN_ENCRYPTION_KEY"] = "not-a-valid-key"
        with pytest.raises(ConfigurationError, match="32 bytes"):
            load_settings(environ)

    def test_repr_hides_secrets(self, environ):
        text = repr(load_settings(environ))

        assert "app-secret" not in text
        assert "partner-key" not in text
        assert environ["TOKEN_ENCRYPTION_KEY"] not in text
