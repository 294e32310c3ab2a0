"""
Shared fixtures: in-memory SQLite store, fixed cipher key, fake clock and
platform settings.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace_auth.config.settings import ShopeeSettings, TikTokSettings
from marketplace_auth.credentials.store import CredentialStore
from marketplace_auth.db_base import Base
from marketplace_auth.signing.signer import RequestSigner
from marketplace_auth.tests.helpers import FakeClock
from marketplace_auth.utils.encryption import SecretCipher

TEST_KEY = bytes(range(32))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(key=TEST_KEY)


@pytest.fixture
def engine():
    """In-memory SQLite engine shared by every session of one test."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    import marketplace_auth.models  # noqa: F401
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def store(session_factory, cipher, clock) -> CredentialStore:
    return CredentialStore(session_factory, cipher, clock=clock)


@pytest.fixture
def tiktok_settings() -> TikTokSettings:
    return TikTokSettings(
        app_key="test-app-key",
        app_secret="test-app-secret",
        redirect_uri="https://app.example.com/tiktok/callback",
        api_url="https://open-api.tiktokglobalshop.com",
        auth_url="https://auth.tiktok-shops.com",
    )


@pytest.fixture
def shopee_settings() -> ShopeeSettings:
    return ShopeeSettings(
        partner_id=1000,
        partner_key="test-partner-key",
        redirect_uri="https://app.example.com/shopee/callback",
        api_url="https://partner.test-stable.shopeemobile.com",
    )


@pytest.fixture
def signer(tiktok_settings, shopee_settings, clock) -> RequestSigner:
    return RequestSigner(tiktok_settings, shopee_settings, clock=clock)
