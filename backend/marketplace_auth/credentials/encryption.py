"""
Credential token encryption.

Wraps SecretCipher for the token columns of the credential store.

SECURITY REQUIREMENTS:
- Uses AES-256-GCM via TOKEN_ENCRYPTION_KEY
- No plaintext tokens outside process memory
- Encryption validated on startup with a round-trip self check
- Decryption failures are raised, never silently replaced by empty tokens

Usage:
    from marketplace_auth.credentials.encryption import TokenEncryptor

    encryptor = TokenEncryptor(cipher)
    stored = encryptor.encrypt_token(access_token)
    plaintext = encryptor.decrypt_token(stored, credential_id=cred_id)
"""

import logging
from typing import Optional

from marketplace_auth.platform.errors import ConfigurationError, DecryptionError
from marketplace_auth.utils.encryption import (
    EncryptionError,
    SecretCipher,
    needs_encryption,
)

logger = logging.getLogger(__name__)

_SELF_CHECK_VALUE = "marketplace-auth-self-check"


class TokenEncryptor:
    """Token-level encrypt/decrypt with operation logging."""

    def __init__(self, cipher: SecretCipher):
        self.cipher = cipher

    def encrypt_token(self, plaintext: str) -> str:
        """
        Encrypt an OAuth token for storage.

        Raises:
            ValueError: If plaintext is empty
            EncryptionError: If encryption fails
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty token")

        try:
            return self.cipher.encrypt(plaintext)
        except EncryptionError:
            logger.error("Token encryption failed", extra={"operation": "encrypt_token"})
            raise

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return self.encrypt_token(plaintext) if plaintext else None

    def decrypt_token(self, stored: Optional[str], credential_id: Optional[int] = None) -> Optional[str]:
        """
        Decrypt a stored token column.

        Legacy plaintext and empty values pass through unchanged.

        Raises:
            DecryptionError: If the envelope is malformed or fails authentication
        """
        try:
            return self.cipher.reveal(stored)
        except DecryptionError as e:
            logger.error(
                "Token decryption failed",
                extra={"operation": "decrypt_token", "credential_id": credential_id},
            )
            raise DecryptionError(e.message, credential_id=credential_id) from e

    def reencrypt_if_plaintext(self, stored: Optional[str]) -> Optional[str]:
        """
        Return an encrypted replacement for a legacy plaintext value.

        Returns None when the value is empty or already encrypted.
        """
        if not needs_encryption(stored):
            return None
        return self.cipher.encrypt(stored)


def validate_encryption_ready(cipher: SecretCipher) -> bool:
    """
    Validate that encryption works with the configured key.

    Call during startup to fail fast.

    Raises:
        ConfigurationError: If the round-trip self check fails
    """
    try:
        ok = cipher.reveal(cipher.encrypt(_SELF_CHECK_VALUE)) == _SELF_CHECK_VALUE
    except (EncryptionError, DecryptionError) as e:
        raise ConfigurationError("Token encryption self check failed") from e

    if not ok:
        raise ConfigurationError("Token encryption self check failed")

    logger.info("Credential encryption validated successfully")
    return True
