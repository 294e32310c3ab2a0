"""
Encryption utilities for token storage at rest.

Implements AES-256-GCM encryption of individual token strings into a
self-describing envelope:

    ENC::<nonce b64>:<tag b64>:<ciphertext b64>

SECURITY:
- Uses AES-256-GCM for authenticated encryption
- Each encryption uses a unique random 96-bit nonce
- Key must be exactly 32 bytes (256 bits)
- Values without the ENC:: prefix are legacy plaintext and are passed through
  unchanged, so unencrypted rows can be migrated lazily

Usage:
    from marketplace_auth.utils.encryption import SecretCipher

    cipher = SecretCipher(key_string=os.environ["TOKEN_ENCRYPTION_KEY"])

    stored = cipher.encrypt("access-token")
    plaintext = cipher.reveal(stored)
"""

import base64
import binascii
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from marketplace_auth.platform.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)


# AES-GCM constants
NONCE_SIZE = 12  # 96 bits, recommended for AES-GCM
TAG_SIZE = 16    # 128 bits, standard for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256

ENVELOPE_PREFIX = "ENC::"
ENVELOPE_SEPARATOR = ":"


class EncryptionError(Exception):
    """Raised when encryption fails."""
    pass


@dataclass(frozen=True)
class PlaintextSecret:
    """A stored value written before encryption was enabled."""
    value: str


@dataclass(frozen=True)
class EncryptedEnvelope:
    """A parsed ENC:: envelope."""
    nonce: bytes
    tag: bytes
    ciphertext: bytes

    def serialize(self) -> str:
        return ENVELOPE_PREFIX + ENVELOPE_SEPARATOR.join(
            base64.b64encode(part).decode("ascii")
            for part in (self.nonce, self.tag, self.ciphertext)
        )


StoredSecret = Union[PlaintextSecret, EncryptedEnvelope]


def _b64decode_strict(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def parse_stored_secret(value: str) -> StoredSecret:
    """
    Classify a stored value as legacy plaintext or an encrypted envelope.

    Args:
        value: Raw column value

    Returns:
        PlaintextSecret or EncryptedEnvelope

    Raises:
        DecryptionError: If the value carries the envelope prefix but is malformed
    """
    if not value.startswith(ENVELOPE_PREFIX):
        return PlaintextSecret(value)

    parts = value[len(ENVELOPE_PREFIX):].split(ENVELOPE_SEPARATOR)
    # An empty plaintext seals to an empty ciphertext field
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise DecryptionError("Malformed ciphertext envelope: expected nonce, tag and ciphertext")

    try:
        nonce, tag, ciphertext = (_b64decode_strict(part) for part in parts)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("Malformed ciphertext envelope: invalid base64") from e

    if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
        raise DecryptionError("Malformed ciphertext envelope: truncated nonce or tag")

    return EncryptedEnvelope(nonce=nonce, tag=tag, ciphertext=ciphertext)


def needs_encryption(value: Optional[str]) -> bool:
    """True for non-empty values still stored as legacy plaintext."""
    return bool(value) and not value.startswith(ENVELOPE_PREFIX)


def decode_key_string(key_string: str) -> bytes:
    """
    Decode key from string format.

    Supports, in order:
    - Base64 encoding
    - Hex encoding
    - Raw UTF-8 (if exactly 32 bytes)

    Raises:
        ConfigurationError: If no 32-byte key can be derived
    """
    if not key_string:
        raise ConfigurationError("Encryption key is required", missing=["TOKEN_ENCRYPTION_KEY"])

    # Try base64 first
    try:
        decoded = base64.b64decode(key_string, validate=True)
        if len(decoded) == KEY_SIZE:
            return decoded
    except (binascii.Error, ValueError):
        pass

    # Try hex
    try:
        decoded = bytes.fromhex(key_string)
        if len(decoded) == KEY_SIZE:
            return decoded
    except ValueError:
        pass

    # Try raw bytes (UTF-8 encoded)
    raw = key_string.encode("utf-8")
    if len(raw) == KEY_SIZE:
        return raw

    raise ConfigurationError(
        f"TOKEN_ENCRYPTION_KEY must decode to {KEY_SIZE} bytes (base64, hex or raw UTF-8)"
    )


class SecretCipher:
    """
    AES-256-GCM cipher for token strings.

    SECURITY:
    - Key must be 32 bytes (256 bits)
    - Never reuse nonces with the same key
    - Plaintext inputs and outputs are never logged
    """

    def __init__(self, key: Optional[bytes] = None, key_string: Optional[str] = None):
        """
        Initialize cipher with encryption key.

        Args:
            key: 32-byte encryption key as bytes
            key_string: Base64, hex or raw 32-character key string

        Raises:
            ConfigurationError: If key is missing or wrong size
        """
        if key is not None:
            self._key = key
        elif key_string is not None:
            self._key = decode_key_string(key_string)
        else:
            raise ConfigurationError("Encryption key is required", missing=["TOKEN_ENCRYPTION_KEY"])

        if len(self._key) != KEY_SIZE:
            raise ConfigurationError(
                f"Encryption key must be {KEY_SIZE} bytes, got {len(self._key)}"
            )

        self._aesgcm = AESGCM(self._key)

    def __repr__(self) -> str:
        return "SecretCipher(key=<redacted>)"

    @staticmethod
    def generate_key_string() -> str:
        """
        Generate a new random encryption key as base64 string.

        Returns:
            Base64-encoded 32-byte key
        """
        return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("utf-8")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a token into an ENC:: envelope.

        Args:
            plaintext: Token value

        Returns:
            Serialized envelope safe for database storage

        Raises:
            EncryptionError: If encryption fails
        """
        try:
            nonce = secrets.token_bytes(NONCE_SIZE)
            # AESGCM.encrypt returns ciphertext + tag concatenated
            sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error("Encryption failed", extra={"error_type": type(e).__name__})
            raise EncryptionError("Failed to encrypt value") from e

        return EncryptedEnvelope(
            nonce=nonce,
            tag=sealed[-TAG_SIZE:],
            ciphertext=sealed[:-TAG_SIZE],
        ).serialize()

    def decrypt(self, stored: StoredSecret) -> str:
        """
        Resolve a parsed stored value to plaintext.

        Raises:
            DecryptionError: If the authentication tag does not verify
        """
        if isinstance(stored, PlaintextSecret):
            return stored.value

        try:
            plaintext = self._aesgcm.decrypt(stored.nonce, stored.ciphertext + stored.tag, None)
        except InvalidTag as e:
            logger.error("Decryption failed: authentication tag mismatch")
            raise DecryptionError(
                "Decryption failed: data was tampered with or the key changed"
            ) from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted value is not valid UTF-8") from e

    def reveal(self, value: Optional[str]) -> Optional[str]:
        """
        Decrypt a raw column value, passing legacy plaintext and empty values through.

        Raises:
            DecryptionError: On malformed envelopes or tag mismatch
        """
        if not value:
            return value
        return self.decrypt(parse_stored_secret(value))
