"""
Tests for AuthorizationService: OAuth callbacks -> stored credentials.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from marketplace_auth.credentials.types import CredentialStatus, Platform
from marketplace_auth.integrations.shopee.oauth_client import ShopeeOAuthClient
from marketplace_auth.integrations.tiktok.oauth_client import (
    AUTHORIZED_SHOPS_PATH,
    TOKEN_GET_PATH,
    TikTokOAuthClient,
)
from marketplace_auth.platform.errors import AuthorizationExchangeError
from marketplace_auth.services.authorization_service import AuthorizationService
from marketplace_auth.tests.helpers import FIXED_EPOCH

TOKEN_RESPONSE = {
    "code": 0,
    "message": "success",
    "data": {
        "access_token": "ROW_access_value",
        "access_token_expire_in": FIXED_EPOCH + 7 * 24 * 3600,
        "refresh_token": "ROW_refresh_value",
        "refresh_token_expire_in": FIXED_EPOCH + 30 * 24 * 3600,
        "open_id": "open-1",
        "seller_name": "Demo Seller",
    },
}


class FakeMarketplace:
    """Routes mocked token and shop calls; shops can be changed per test."""

    def __init__(self):
        self.shops = [{"id": "7000001", "cipher": "GCP_a", "name": "Shop A", "region": "MY"}]
        self.shop_lookup_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == TOKEN_GET_PATH:
            return httpx.Response(200, json=TOKEN_RESPONSE)
        if request.url.path == AUTHORIZED_SHOPS_PATH:
            if self.shop_lookup_status != 200:
                return httpx.Response(self.shop_lookup_status)
            return httpx.Response(200, json={"code": 0, "data": {"shops": self.shops}})
        if request.url.path == "/api/v2/auth/token/get":
            return httpx.Response(200, json={
                "error": "",
                "access_token": "shopee-access",
                "refresh_token": "shopee-refresh",
                "expire_in": 14400,
            })
        return httpx.Response(404)


@pytest.fixture
def marketplace() -> FakeMarketplace:
    return FakeMarketplace()


@pytest.fixture
def service(store, tiktok_settings, shopee_settings, signer, clock, marketplace) -> AuthorizationService:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(marketplace.handler))
    return AuthorizationService(
        store,
        TikTokOAuthClient(tiktok_settings, signer, http_client=http_client, clock=clock),
        ShopeeOAuthClient(shopee_settings, signer, http_client=http_client, clock=clock),
    )


class TestAuthorizationUrls:

    def test_tiktok_url_carries_state(self, service):
        query = parse_qs(urlparse(service.authorization_url(Platform.TIKTOK, "abc")).query)
        assert query["state"] == ["abc"]

    def test_shopee_state_goes_into_redirect(self, service):
        query = parse_qs(urlparse(service.authorization_url(Platform.SHOPEE, "abc")).query)
        assert query["redirect"] == ["https://app.example.com/shopee/callback?state=abc"]


class TestTikTokAuthorization:

    @pytest.mark.asyncio
    async def test_links_first_shop(self, service):
        credential = await service.complete_tiktok_authorization("code-1")

        assert credential.status == CredentialStatus.ACTIVE
        assert credential.external_account_id == "open-1"
        assert credential.shop_id == "7000001"
        assert credential.shop_cipher == "GCP_a"
        assert credential.seller_name == "Demo Seller"

    @pytest.mark.asyncio
    async def test_repeat_callback_updates_in_place(self, service, store):
        first = await service.complete_tiktok_authorization("code-1")
        second = await service.complete_tiktok_authorization("code-2")

        assert second.id == first.id
        assert second.version > first.version
        assert store.find_by_shop(Platform.TIKTOK, "7000001").id == first.id

    @pytest.mark.asyncio
    async def test_no_shops_leaves_pending(self, service, marketplace):
        marketplace.shops = []

        credential = await service.complete_tiktok_authorization("code-1")

        assert credential.status == CredentialStatus.PENDING
        assert credential.access_token == "ROW_access_value"

    @pytest.mark.asyncio
    async def test_shop_lookup_failure_leaves_pending(self, service, marketplace):
        marketplace.shop_lookup_status = 503

        credential = await service.complete_tiktok_authorization("code-1")

        assert credential.status == CredentialStatus.PENDING

    @pytest.mark.asyncio
    async def test_empty_code_rejected(self, service):
        with pytest.raises(AuthorizationExchangeError):
            await service.complete_tiktok_authorization("")


class TestShopeeAuthorization:

    @pytest.mark.asyncio
    async def test_stores_active_credential(self, service):
        credential = await service.complete_shopee_authorization("code-1", 30081881)

        assert credential.status == CredentialStatus.ACTIVE
        assert credential.external_account_id == "shopee_30081881"
        assert credential.shop_id == "30081881"
        assert credential.access_token == "shopee-access"

    @pytest.mark.asyncio
    async def test_reauthorization_reactivates(self, service, store):
        credential = await service.complete_shopee_authorization("code-1", "30081881")
        store.mark_inactive(credential.id, "refresh_token_rejected")

        revived = await service.complete_shopee_authorization("code-2", "30081881")

        assert revived.id == credential.id
        assert revived.status == CredentialStatus.ACTIVE
