"""
Tests for RequestSigner: credential snapshot + API call -> signed request.
"""

import hashlib
import hmac

import pytest

from marketplace_auth.credentials.types import (
    CredentialStatus,
    Platform,
    ShopeeCredential,
    TikTokCredential,
)
from marketplace_auth.platform.errors import SignatureError
from marketplace_auth.signing.engine import tiktok_base_string
from marketplace_auth.signing.signer import (
    TIKTOK_ACCESS_TOKEN_HEADER,
    is_timestamp_fresh,
)
from marketplace_auth.tests.helpers import FIXED_EPOCH


def _hmac_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


@pytest.fixture
def tiktok_credential() -> TikTokCredential:
    return TikTokCredential(
        id=1,
        external_account_id="open-1",
        status=CredentialStatus.ACTIVE,
        version=3,
        access_token="ROW_access_token_value",
        refresh_token="ROW_refresh_token_value",
        shop_id="7000001",
        shop_cipher="GCP_cipher",
    )


@pytest.fixture
def shopee_credential() -> ShopeeCredential:
    return ShopeeCredential(
        id=2,
        external_account_id="shopee_30081881",
        status=CredentialStatus.ACTIVE,
        version=1,
        access_token="shopee-access",
        refresh_token="shopee-refresh",
        shop_id="30081881",
    )


class TestTikTokSigning:

    PATH = "/order/202309/orders/search"

    def test_params_and_header(self, signer, tiktok_credential):
        request = signer.sign_request(tiktok_credential, "post", self.PATH, params={"page_size": 20})

        assert request.method == "POST"
        assert request.url == "https://open-api.tiktokglobalshop.com" + self.PATH
        assert request.params["app_key"] == "test-app-key"
        assert request.params["timestamp"] == str(FIXED_EPOCH)
        assert request.params["shop_cipher"] == "GCP_cipher"
        assert request.params["page_size"] == "20"
        assert "access_token" not in request.params
        assert request.headers[TIKTOK_ACCESS_TOKEN_HEADER] == "ROW_access_token_value"

    def test_signature_covers_params_and_body(self, signer, tiktok_credential):
        body = {"order_status": "UNPAID"}
        request = signer.sign_request(tiktok_credential, "POST", self.PATH, body=body)

        unsigned = {k: v for k, v in request.params.items() if k != "sign"}
        expected = _hmac_hex(
            "test-app-secret",
            tiktok_base_string(self.PATH, unsigned, request.content, "test-app-secret"),
        )

        assert request.params["sign"] == expected
        assert request.content == '{"order_status":"UNPAID"}'
        assert request.headers["content-type"] == "application/json"

    def test_caller_timestamp_is_ignored(self, signer, tiktok_credential):
        request = signer.sign_request(
            tiktok_credential, "GET", self.PATH, params={"timestamp": "1"}
        )
        assert request.timestamp == FIXED_EPOCH

    def test_caller_sign_and_token_are_dropped(self, signer, tiktok_credential):
        request = signer.sign_request(
            tiktok_credential, "GET", self.PATH,
            params={"sign": "forged", "access_token": "leaked"},
        )
        assert request.params["sign"] != "forged"
        assert "access_token" not in request.params

    def test_timestamp_follows_clock(self, signer, tiktok_credential, clock):
        first = signer.sign_request(tiktok_credential, "GET", self.PATH)
        clock.advance(seconds=90)
        second = signer.sign_request(tiktok_credential, "GET", self.PATH)

        assert second.timestamp - first.timestamp == 90
        assert first.params["sign"] != second.params["sign"]

    def test_missing_access_token_raises(self, signer):
        credential = TikTokCredential(
            id=9, external_account_id="open-9", status=CredentialStatus.PENDING, version=1
        )
        with pytest.raises(SignatureError, match="no access token"):
            signer.sign_request(credential, "GET", self.PATH)

    def test_httpx_kwargs_encode_content(self, signer, tiktok_credential):
        request = signer.sign_request(tiktok_credential, "POST", self.PATH, body={"a": 1})
        kwargs = request.to_httpx_kwargs()

        assert kwargs["content"] == b'{"a":1}'
        assert kwargs["params"] is request.params

    def test_repr_hides_secrets(self, signer, tiktok_credential):
        request = signer.sign_request(tiktok_credential, "GET", self.PATH)
        text = repr(request)

        assert "ROW_access_token_value" not in text
        assert request.params["sign"] not in text


class TestShopeeSigning:

    PATH = "/api/v2/order/get_order_list"

    def test_shop_scoped_request(self, signer, shopee_credential):
        request = signer.sign_request(shopee_credential, "GET", self.PATH, params={"page_size": 50})

        expected = _hmac_hex(
            "test-partner-key", f"1000{self.PATH}{FIXED_EPOCH}shopee-access30081881"
        )
        assert request.params["partner_id"] == "1000"
        assert request.params["timestamp"] == str(FIXED_EPOCH)
        assert request.params["access_token"] == "shopee-access"
        assert request.params["shop_id"] == "30081881"
        assert request.params["page_size"] == "50"
        assert request.params["sign"] == expected
        assert TIKTOK_ACCESS_TOKEN_HEADER not in request.headers

    def test_merchant_scoped_request(self, signer):
        credential = ShopeeCredential(
            id=3,
            external_account_id="shopee_merchant_55",
            status=CredentialStatus.ACTIVE,
            version=1,
            access_token="merchant-access",
            merchant_id="55",
        )
        request = signer.sign_request(credential, "GET", self.PATH)

        expected = _hmac_hex("test-partner-key", f"1000{self.PATH}{FIXED_EPOCH}merchant-access55")
        assert request.params["merchant_id"] == "55"
        assert "shop_id" not in request.params
        assert request.params["sign"] == expected

    def test_unscoped_credential_raises(self, signer):
        credential = ShopeeCredential(
            id=4,
            external_account_id="shopee_x",
            status=CredentialStatus.ACTIVE,
            version=1,
            access_token="access",
        )
        with pytest.raises(SignatureError, match="neither shop_id nor merchant_id"):
            signer.sign_request(credential, "GET", self.PATH)

    def test_public_request(self, signer):
        path = "/api/v2/auth/token/get"
        request = signer.sign_public(Platform.SHOPEE, path, method="POST", body={"code": "c"})

        assert request.params["sign"] == _hmac_hex("test-partner-key", f"1000{path}{FIXED_EPOCH}")
        assert "access_token" not in request.params
        assert request.content == '{"code":"c"}'


class TestTimestampFreshness:

    def test_inside_window(self):
        assert is_timestamp_fresh(FIXED_EPOCH, FIXED_EPOCH + 300)
        assert is_timestamp_fresh(FIXED_EPOCH, FIXED_EPOCH - 300)

    def test_outside_window(self):
        assert not is_timestamp_fresh(FIXED_EPOCH, FIXED_EPOCH + 301)
        assert not is_timestamp_fresh(FIXED_EPOCH, FIXED_EPOCH - 301)
