"""
Credential storage, lifecycle and redaction.

Tokens are encrypted at rest and only ever decrypted into immutable
in-memory snapshots.
"""

from marketplace_auth.credentials.redaction import (
    AuditEventType,
    CredentialAuditLogger,
    CredentialLoggingFilter,
    configure_logging,
)
from marketplace_auth.credentials.store import CredentialStore
from marketplace_auth.credentials.types import (
    Credential,
    CredentialStatus,
    Platform,
    ShopeeCredential,
    ShopLink,
    TikTokCredential,
    TokenGrant,
)

__all__ = [
    "AuditEventType",
    "CredentialAuditLogger",
    "CredentialLoggingFilter",
    "configure_logging",
    "CredentialStore",
    "Credential",
    "CredentialStatus",
    "Platform",
    "ShopeeCredential",
    "ShopLink",
    "TikTokCredential",
    "TokenGrant",
]
