"""
Credential storage for marketplace OAuth credentials.

SECURITY REQUIREMENTS:
- Tokens are encrypted at rest before storage
- No plaintext tokens outside process memory
- Reads return immutable, decrypted snapshots; ORM rows never leave the store

CONSISTENCY:
- Every public method runs in its own transaction
- update_tokens writes tokens, expiry and status in one UPDATE statement, so a
  reader never sees a new access token paired with an old expiry
- update_tokens can be made conditional on the version the caller read

Usage:
    store = CredentialStore(session_factory, cipher)

    credential = store.upsert(
        platform=Platform.SHOPEE,
        external_account_id="shopee_30081881",
        grant=grant,
        status=CredentialStatus.ACTIVE,
        shop=ShopLink(shop_id="30081881"),
    )

    credential = store.update_tokens(credential.id, new_grant, expected_version=credential.version)
"""

import json
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace_auth.credentials.encryption import TokenEncryptor
from marketplace_auth.credentials.redaction import (
    AuditEventType,
    CredentialAuditLogger,
    redact_credential_value,
)
from marketplace_auth.credentials.types import (
    Credential,
    Platform,
    ShopeeCredential,
    ShopLink,
    TikTokCredential,
    TokenGrant,
)
from marketplace_auth.models.marketplace_credential import (
    CredentialStatus,
    MarketplaceCredential,
)
from marketplace_auth.platform.errors import (
    CredentialNotFoundError,
    DecryptionError,
    StaleCredentialError,
)
from marketplace_auth.utils.clock import Clock, as_utc, utc_now
from marketplace_auth.utils.encryption import SecretCipher

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


class CredentialStore:
    """
    Durable credential record, one row per (platform, external account).

    Only the token lifecycle manager and the authorization service write
    through this class.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cipher: SecretCipher,
        clock: Clock = utc_now,
        audit: Optional[CredentialAuditLogger] = None,
    ):
        self._session_factory = session_factory
        self.encryptor = TokenEncryptor(cipher)
        self.clock = clock
        self.audit = audit or CredentialAuditLogger()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, credential_id: int) -> Optional[Credential]:
        with self._session_factory() as session:
            row = session.get(MarketplaceCredential, credential_id)
            return self._to_credential(row) if row else None

    def find_by_external_id(self, platform: Platform, external_account_id: str) -> Optional[Credential]:
        with self._session_factory() as session:
            row = self._get_by_external_id(session, platform, external_account_id)
            return self._to_credential(row) if row else None

    def find_by_shop(self, platform: Platform, shop_id: str) -> Optional[Credential]:
        """
        Find the credential controlling a shop.

        If several accounts have controlled the shop, the active one wins,
        then the most recently updated.
        """
        with self._session_factory() as session:
            rows = session.execute(
                select(MarketplaceCredential).where(
                    MarketplaceCredential.platform == platform,
                    MarketplaceCredential.shop_id == str(shop_id),
                )
            ).scalars().all()
            if not rows:
                return None
            rows = sorted(
                rows,
                key=lambda r: (r.status == CredentialStatus.ACTIVE, _optional_utc(r.updated_at) or _EPOCH),
                reverse=True,
            )
            return self._to_credential(rows[0])

    def list_refreshable(self, expiring_before: datetime) -> list[Credential]:
        """
        Active credentials with a refresh token whose access token expires
        before the given bound (or has no known expiry).

        Rows that fail decryption are audited and left out; a bad row must not
        stop the remaining credentials from being refreshed.
        """
        bound = as_utc(expiring_before)
        with self._session_factory() as session:
            rows = session.execute(
                select(MarketplaceCredential)
                .where(
                    MarketplaceCredential.status == CredentialStatus.ACTIVE,
                    MarketplaceCredential.refresh_token_encrypted.isnot(None),
                    or_(
                        MarketplaceCredential.expires_at.is_(None),
                        MarketplaceCredential.expires_at < bound,
                    ),
                )
                .order_by(MarketplaceCredential.expires_at.asc().nullsfirst())
            ).scalars().all()

            credentials = []
            for row in rows:
                try:
                    credentials.append(self._to_credential(row))
                except DecryptionError:
                    logger.error(
                        "Skipping credential that cannot be decrypted",
                        extra={"credential_id": row.id, "platform": row.platform.value},
                    )
            return credentials

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        platform: Platform,
        external_account_id: str,
        grant: TokenGrant,
        status: CredentialStatus = CredentialStatus.PENDING,
        shop: Optional[ShopLink] = None,
        merchant_id: Optional[str] = None,
    ) -> Credential:
        """
        Create or update the credential for (platform, external_account_id).

        A repeated authorization for the same account updates in place and
        reactivates an inactive credential.

        Raises:
            ValueError: If status is active and no shop id is known
        """
        try:
            return self._upsert_once(platform, external_account_id, grant, status, shop, merchant_id)
        except IntegrityError:
            # Lost an insert race against a concurrent callback; the row exists now
            logger.info(
                "Credential insert raced, retrying as update",
                extra={"platform": platform.value, "external_account_id": external_account_id},
            )
            return self._upsert_once(platform, external_account_id, grant, status, shop, merchant_id)

    def _upsert_once(
        self,
        platform: Platform,
        external_account_id: str,
        grant: TokenGrant,
        status: CredentialStatus,
        shop: Optional[ShopLink],
        merchant_id: Optional[str],
    ) -> Credential:
        now = self.clock()
        access_token_encrypted = self.encryptor.encrypt_token(grant.access_token)
        refresh_token_encrypted = self.encryptor.encrypt_optional(grant.refresh_token)

        with self._session_factory() as session, session.begin():
            row = self._get_by_external_id(session, platform, external_account_id)
            created = row is None
            if created:
                row = MarketplaceCredential(
                    platform=platform,
                    external_account_id=external_account_id,
                    created_at=now,
                    version=1,
                    refresh_failure_count=0,
                )
                session.add(row)
            else:
                row.version = (row.version or 0) + 1

            shop_id = (shop.shop_id if shop else None) or grant.shop_id or row.shop_id
            if status == CredentialStatus.ACTIVE and not shop_id:
                raise ValueError("An active credential requires a shop id")

            row.access_token_encrypted = access_token_encrypted
            if refresh_token_encrypted is not None:
                row.refresh_token_encrypted = refresh_token_encrypted
            row.expires_at = as_utc(grant.expires_at)
            row.refresh_token_expires_at = _optional_utc(grant.refresh_token_expires_at)
            row.status = status
            row.shop_id = str(shop_id) if shop_id else None
            row.merchant_id = merchant_id or grant.merchant_id or row.merchant_id
            if shop:
                row.shop_cipher = shop.shop_cipher
                row.shop_name = shop.shop_name
                row.shop_region = shop.shop_region
            if grant.seller_name:
                row.seller_name = grant.seller_name
            if grant.region:
                row.region = grant.region
            if grant.granted_scopes:
                row.granted_scopes = json.dumps(list(grant.granted_scopes))
            row.refresh_failure_count = 0
            row.last_error = None
            row.last_refreshed_at = now
            row.updated_at = now

            session.flush()
            credential = self._to_credential(row)

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            credential_id=credential.id,
            platform=platform.value,
            shop_id=credential.shop_id,
            external_account_id=external_account_id,
            metadata={"created_new": created, "status": status.value},
        )
        return credential

    def update_tokens(
        self,
        credential_id: int,
        grant: TokenGrant,
        expected_version: Optional[int] = None,
    ) -> Credential:
        """
        Atomically replace the token pair and expiry.

        The refresh token is kept when the grant does not rotate it.

        Args:
            credential_id: Credential to update
            grant: New tokens
            expected_version: Version the caller read; a mismatch means another
                writer got there first

        Raises:
            CredentialNotFoundError: If the credential does not exist
            StaleCredentialError: If expected_version no longer matches
        """
        now = self.clock()
        values = {
            "access_token_encrypted": self.encryptor.encrypt_token(grant.access_token),
            "expires_at": as_utc(grant.expires_at),
            "last_refreshed_at": now,
            "updated_at": now,
            "refresh_failure_count": 0,
            "last_error": None,
        }
        if grant.refresh_token:
            values["refresh_token_encrypted"] = self.encryptor.encrypt_token(grant.refresh_token)
        if grant.refresh_token_expires_at is not None:
            values["refresh_token_expires_at"] = as_utc(grant.refresh_token_expires_at)

        with self._session_factory() as session, session.begin():
            current = session.execute(
                select(
                    MarketplaceCredential.platform,
                    MarketplaceCredential.version,
                    MarketplaceCredential.shop_id,
                ).where(MarketplaceCredential.id == credential_id)
            ).one_or_none()
            if current is None:
                raise CredentialNotFoundError("marketplace", str(credential_id))
            if expected_version is not None and current.version != expected_version:
                raise StaleCredentialError(credential_id, expected_version)

            # An active credential must have a shop; pending ones stay pending
            if current.shop_id:
                values["status"] = CredentialStatus.ACTIVE

            result = session.execute(
                update(MarketplaceCredential)
                .where(
                    MarketplaceCredential.id == credential_id,
                    MarketplaceCredential.version == current.version,
                )
                .values(version=MarketplaceCredential.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleCredentialError(credential_id, current.version)

            row = session.get(MarketplaceCredential, credential_id)
            credential = self._to_credential(row)

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            credential_id=credential.id,
            platform=credential.platform.value,
            shop_id=credential.shop_id,
            external_account_id=credential.external_account_id,
            metadata={"version": credential.version},
        )
        return credential

    def link_shop(self, credential_id: int, shop: ShopLink) -> Credential:
        """
        Attach a resolved shop and activate the credential.

        Raises:
            CredentialNotFoundError: If the credential does not exist
        """
        if not shop.shop_id:
            raise ValueError("shop_id is required to link a shop")

        with self._session_factory() as session, session.begin():
            row = session.get(MarketplaceCredential, credential_id)
            if row is None:
                raise CredentialNotFoundError("marketplace", str(credential_id))
            row.shop_id = str(shop.shop_id)
            row.shop_cipher = shop.shop_cipher
            row.shop_name = shop.shop_name
            row.shop_region = shop.shop_region
            row.status = CredentialStatus.ACTIVE
            row.version = (row.version or 0) + 1
            row.updated_at = self.clock()
            session.flush()
            credential = self._to_credential(row)

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_SHOP_LINKED,
            credential_id=credential.id,
            platform=credential.platform.value,
            shop_id=credential.shop_id,
            external_account_id=credential.external_account_id,
            metadata={"shop_name": shop.shop_name},
        )
        return credential

    def mark_inactive(self, credential_id: int, reason: str) -> None:
        """Move a credential to inactive; only a new authorization revives it."""
        with self._session_factory() as session, session.begin():
            row = session.get(MarketplaceCredential, credential_id)
            if row is None:
                raise CredentialNotFoundError("marketplace", str(credential_id))
            row.status = CredentialStatus.INACTIVE
            row.last_error = redact_credential_value(reason)[:MAX_ERROR_LENGTH]
            row.version = (row.version or 0) + 1
            row.updated_at = self.clock()
            platform = row.platform.value
            shop_id = row.shop_id
            external_account_id = row.external_account_id

        self.audit.log_error(
            event_type=AuditEventType.CREDENTIAL_REAUTHORIZATION_REQUIRED,
            credential_id=credential_id,
            platform=platform,
            error=reason,
            shop_id=shop_id,
            external_account_id=external_account_id,
        )

    def record_refresh_failure(self, credential_id: int, error: str) -> int:
        """
        Count a transient refresh failure without changing status or version.

        Returns:
            The consecutive failure count
        """
        safe_error = redact_credential_value(error)[:MAX_ERROR_LENGTH]
        with self._session_factory() as session, session.begin():
            session.execute(
                update(MarketplaceCredential)
                .where(MarketplaceCredential.id == credential_id)
                .values(
                    refresh_failure_count=MarketplaceCredential.refresh_failure_count + 1,
                    last_error=safe_error,
                )
                .execution_options(synchronize_session=False)
            )
            row = session.execute(
                select(
                    MarketplaceCredential.platform,
                    MarketplaceCredential.shop_id,
                    MarketplaceCredential.refresh_failure_count,
                ).where(MarketplaceCredential.id == credential_id)
            ).one_or_none()
            if row is None:
                raise CredentialNotFoundError("marketplace", str(credential_id))

        self.audit.log_error(
            event_type=AuditEventType.CREDENTIAL_REFRESH_FAILED,
            credential_id=credential_id,
            platform=row.platform.value,
            error=safe_error,
            shop_id=row.shop_id,
        )
        return row.refresh_failure_count

    def migrate_plaintext_tokens(self, batch_size: int = 100) -> int:
        """
        Encrypt legacy plaintext token columns in place.

        Returns:
            Number of rows re-encrypted
        """
        migrated = 0
        last_id = 0
        while True:
            with self._session_factory() as session, session.begin():
                rows = session.execute(
                    select(MarketplaceCredential)
                    .where(MarketplaceCredential.id > last_id)
                    .order_by(MarketplaceCredential.id.asc())
                    .limit(batch_size)
                ).scalars().all()
                if not rows:
                    break

                for row in rows:
                    last_id = row.id
                    new_access = self.encryptor.reencrypt_if_plaintext(row.access_token_encrypted)
                    new_refresh = self.encryptor.reencrypt_if_plaintext(row.refresh_token_encrypted)
                    if new_access is None and new_refresh is None:
                        continue
                    if new_access is not None:
                        row.access_token_encrypted = new_access
                    if new_refresh is not None:
                        row.refresh_token_encrypted = new_refresh
                    migrated += 1

        logger.info("Plaintext token migration complete", extra={"migrated": migrated})
        return migrated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _get_by_external_id(
        session: Session, platform: Platform, external_account_id: str
    ) -> Optional[MarketplaceCredential]:
        return session.execute(
            select(MarketplaceCredential).where(
                MarketplaceCredential.platform == platform,
                MarketplaceCredential.external_account_id == external_account_id,
            )
        ).scalar_one_or_none()

    def _to_credential(self, row: MarketplaceCredential) -> Credential:
        try:
            access_token = self.encryptor.decrypt_token(row.access_token_encrypted, row.id)
            refresh_token = self.encryptor.decrypt_token(row.refresh_token_encrypted, row.id)
        except DecryptionError as e:
            self.audit.log_error(
                event_type=AuditEventType.CREDENTIAL_DECRYPTION_FAILED,
                credential_id=row.id,
                platform=row.platform.value,
                error=e.message,
                shop_id=row.shop_id,
                external_account_id=row.external_account_id,
            )
            raise

        common = dict(
            id=row.id,
            external_account_id=row.external_account_id,
            status=row.status,
            version=row.version,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=_optional_utc(row.expires_at),
            refresh_token_expires_at=_optional_utc(row.refresh_token_expires_at),
            shop_id=row.shop_id,
            shop_name=row.shop_name,
            region=row.region,
            updated_at=_optional_utc(row.updated_at),
        )
        if row.platform == Platform.TIKTOK:
            return TikTokCredential(
                shop_cipher=row.shop_cipher,
                shop_region=row.shop_region,
                seller_name=row.seller_name,
                granted_scopes=tuple(json.loads(row.granted_scopes)) if row.granted_scopes else (),
                **common,
            )
        return ShopeeCredential(merchant_id=row.merchant_id, **common)
