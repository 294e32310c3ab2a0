"""
Authorization service: OAuth callback handling for both marketplaces.

Turns a platform authorization callback into a stored credential:

TikTok:  code -> tokens -> credential (pending, keyed by open_id)
         -> first authorized shop -> credential (active)
Shopee:  code + shop_id -> tokens -> credential (active, keyed by shopee_<shop_id>)

Repeating the flow for the same account updates the existing credential in
place and reactivates it if it had been marked inactive.
"""

import logging
from typing import Union

from marketplace_auth.credentials.store import CredentialStore
from marketplace_auth.credentials.types import Credential, CredentialStatus, Platform
from marketplace_auth.integrations.shopee.oauth_client import ShopeeOAuthClient, shopee_external_id
from marketplace_auth.integrations.tiktok.oauth_client import TikTokOAuthClient
from marketplace_auth.platform.errors import AuthorizationExchangeError

logger = logging.getLogger(__name__)


class AuthorizationService:

    def __init__(
        self,
        store: CredentialStore,
        tiktok_client: TikTokOAuthClient,
        shopee_client: ShopeeOAuthClient,
    ):
        self.store = store
        self.tiktok_client = tiktok_client
        self.shopee_client = shopee_client

    def authorization_url(self, platform: Platform, state: str = "") -> str:
        """
        URL to send the seller to.

        TikTok round-trips `state`; Shopee has no state parameter, so it is
        appended to the redirect URI instead.
        """
        if platform == Platform.TIKTOK:
            return self.tiktok_client.build_authorize_url(state)
        redirect = self.shopee_client.settings.redirect_uri
        if state:
            separator = "&" if "?" in redirect else "?"
            redirect = f"{redirect}{separator}state={state}"
        return self.shopee_client.build_authorize_url(redirect)

    async def complete_tiktok_authorization(self, code: str) -> Credential:
        """
        Exchange a TikTok authorization code and resolve the seller's shop.

        Returns the stored credential: active when a shop was found, pending
        otherwise.

        Raises:
            AuthorizationExchangeError: If the code exchange fails
        """
        grant = await self.tiktok_client.exchange_code(code)

        # A re-authorization keeps a previously linked shop active
        existing = self.store.find_by_external_id(Platform.TIKTOK, grant.external_account_id)
        credential = self.store.upsert(
            platform=Platform.TIKTOK,
            external_account_id=grant.external_account_id,
            grant=grant,
            status=CredentialStatus.ACTIVE if existing and existing.shop_id else CredentialStatus.PENDING,
        )

        try:
            shops = await self.tiktok_client.fetch_authorized_shops(grant.access_token)
        except AuthorizationExchangeError as e:
            # Tokens are stored; the shop can be linked on a later attempt
            logger.warning(
                "TikTok shop lookup failed, credential left pending",
                extra={"credential_id": credential.id, "error": e.message},
            )
            return credential

        if not shops:
            logger.warning(
                "TikTok authorization returned no shops, credential left pending",
                extra={"credential_id": credential.id},
            )
            return credential

        if len(shops) > 1:
            logger.info(
                "TikTok account authorizes several shops, linking the first",
                extra={"credential_id": credential.id, "shop_count": len(shops)},
            )

        return self.store.link_shop(credential.id, shops[0])

    async def complete_shopee_authorization(self, code: str, shop_id: Union[int, str]) -> Credential:
        """
        Exchange a Shopee authorization code for a shop.

        Raises:
            AuthorizationExchangeError: If the code exchange fails
        """
        grant = await self.shopee_client.exchange_code(code, shop_id)

        return self.store.upsert(
            platform=Platform.SHOPEE,
            external_account_id=shopee_external_id(shop_id),
            grant=grant,
            status=CredentialStatus.ACTIVE,
        )
