"""
Tests for token encryption at rest.

AES-256-GCM envelopes, legacy plaintext passthrough and key decoding.
"""

import base64

import pytest

from marketplace_auth.credentials.encryption import TokenEncryptor, validate_encryption_ready
from marketplace_auth.platform.errors import ConfigurationError, DecryptionError
from marketplace_auth.utils.encryption import (
    ENVELOPE_PREFIX,
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    EncryptedEnvelope,
    PlaintextSecret,
    SecretCipher,
    decode_key_string,
    needs_encryption,
    parse_stored_secret,
)


class TestSecretCipher:

    @pytest.fixture
    def valid_key(self) -> bytes:
        return base64.b64decode(SecretCipher.generate_key_string())

    @pytest.fixture
    def cipher(self, valid_key: bytes) -> SecretCipher:
        return SecretCipher(key=valid_key)

    def test_generate_key_string_returns_base64_32_bytes(self):
        key_string = SecretCipher.generate_key_string()
        assert len(base64.b64decode(key_string)) == KEY_SIZE

    def test_round_trip(self, cipher: SecretCipher):
        for value in ["ROW_abc123", "x" * 5000]:
            assert cipher.reveal(cipher.encrypt(value)) == value

    def test_round_trip_empty(self, cipher: SecretCipher):
        stored = cipher.encrypt("")

        assert stored.startswith(ENVELOPE_PREFIX)
        assert parse_stored_secret(stored).ciphertext == b""
        assert cipher.reveal(stored) == ""

    def test_tampered_empty_envelope_raises(self, cipher: SecretCipher):
        envelope = parse_stored_secret(cipher.encrypt(""))
        flipped = bytes([envelope.tag[0] ^ 0x01]) + envelope.tag[1:]

        with pytest.raises(DecryptionError):
            cipher.reveal(EncryptedEnvelope(envelope.nonce, flipped, b"").serialize())

    def test_round_trip_unicode(self, cipher: SecretCipher):
        stored = cipher.encrypt("tökén-✓")
        assert cipher.reveal(stored) == "tökén-✓"

    def test_encrypt_produces_envelope(self, cipher: SecretCipher):
        stored = cipher.encrypt("access-token")
        assert stored.startswith(ENVELOPE_PREFIX)
        assert "access-token" not in stored
        assert len(stored[len(ENVELOPE_PREFIX):].split(":")) == 3

    def test_each_encryption_uses_new_nonce(self, cipher: SecretCipher):
        first = cipher.encrypt("same")
        second = cipher.encrypt("same")
        assert first != second
        assert parse_stored_secret(first).nonce != parse_stored_secret(second).nonce

    def test_plaintext_passthrough(self, cipher: SecretCipher):
        assert cipher.reveal("legacy-plaintext-token") == "legacy-plaintext-token"
        assert cipher.decrypt(PlaintextSecret("legacy")) == "legacy"

    def test_empty_and_none_pass_through(self, cipher: SecretCipher):
        assert cipher.reveal(None) is None
        assert cipher.reveal("") == ""

    def test_tampered_ciphertext_raises(self, cipher: SecretCipher):
        envelope = parse_stored_secret(cipher.encrypt("access-token"))
        flipped = bytes([envelope.ciphertext[0] ^ 0x01]) + envelope.ciphertext[1:]
        tampered = EncryptedEnvelope(envelope.nonce, envelope.tag, flipped).serialize()

        with pytest.raises(DecryptionError):
            cipher.reveal(tampered)

    def test_wrong_key_raises(self, cipher: SecretCipher):
        stored = cipher.encrypt("access-token")
        other = SecretCipher(key=b"\x01" * KEY_SIZE)

        with pytest.raises(DecryptionError):
            other.reveal(stored)

    @pytest.mark.parametrize("stored", [
        "ENC::abc",
        "ENC::a:b",
        "ENC::a:b:c:d",
        "ENC::::",
        "ENC::!!!:???:***",
    ])
    def test_malformed_envelope_raises(self, cipher: SecretCipher, stored: str):
        with pytest.raises(DecryptionError):
            cipher.reveal(stored)

    def test_truncated_nonce_raises(self):
        short = EncryptedEnvelope(b"\x00" * 4, b"\x00" * TAG_SIZE, b"data").serialize()
        with pytest.raises(DecryptionError, match="truncated"):
            parse_stored_secret(short)

    def test_repr_hides_key(self, cipher: SecretCipher):
        assert "redacted" in repr(cipher)


class TestKeyDecoding:

    def test_base64_key(self):
        key = bytes(range(32))
        assert decode_key_string(base64.b64encode(key).decode()) == key

    def test_hex_key(self):
        key = bytes(range(32))
        assert decode_key_string(key.hex()) == key

    def test_raw_utf8_key(self):
        raw = "k" * 32
        assert decode_key_string(raw) == raw.encode("utf-8")

    def test_cipher_accepts_key_string(self):
        cipher = SecretCipher(key_string=bytes(range(32)).hex())
        assert cipher.reveal(cipher.encrypt("value")) == "value"

    def test_wrong_length_raises(self):
        with pytest.raises(ConfigurationError):
            decode_key_string("too-short")

    def test_missing_key_raises(self):
        with pytest.raises(ConfigurationError, match="Encryption key is required"):
            SecretCipher()

    def test_wrong_size_bytes_key_raises(self):
        with pytest.raises(ConfigurationError, match="must be 32 bytes"):
            SecretCipher(key=b"short")


class TestStoredSecretParsing:

    def test_plaintext_variant(self):
        assert parse_stored_secret("plain") == PlaintextSecret("plain")

    def test_envelope_variant(self):
        cipher = SecretCipher(key=bytes(range(32)))
        parsed = parse_stored_secret(cipher.encrypt("value"))
        assert isinstance(parsed, EncryptedEnvelope)
        assert len(parsed.nonce) == NONCE_SIZE
        assert len(parsed.tag) == TAG_SIZE

    def test_needs_encryption(self):
        cipher = SecretCipher(key=bytes(range(32)))
        assert needs_encryption("plain") is True
        assert needs_encryption(cipher.encrypt("value")) is False
        assert needs_encryption(None) is False
        assert needs_encryption("") is False


class TestTokenEncryptor:

    @pytest.fixture
    def encryptor(self) -> TokenEncryptor:
        return TokenEncryptor(SecretCipher(key=bytes(range(32))))

    def test_empty_token_rejected(self, encryptor: TokenEncryptor):
        with pytest.raises(ValueError, match="empty token"):
            encryptor.encrypt_token("")

    def test_optional_none(self, encryptor: TokenEncryptor):
        assert encryptor.encrypt_optional(None) is None

    def test_decrypt_failure_carries_credential_id(self, encryptor: TokenEncryptor):
        with pytest.raises(DecryptionError) as exc_info:
            encryptor.decrypt_token("ENC::bad", credential_id=42)
        assert exc_info.value.credential_id == 42
        assert exc_info.value.code == "CREDENTIAL_DECRYPTION_FAILED"

    def test_reencrypt_only_plaintext(self, encryptor: TokenEncryptor):
        encrypted = encryptor.reencrypt_if_plaintext("legacy")
        assert encrypted.startswith(ENVELOPE_PREFIX)
        assert encryptor.reencrypt_if_plaintext(encrypted) is None
        assert encryptor.reencrypt_if_plaintext(None) is None

    def test_validate_encryption_ready(self):
        assert validate_encryption_ready(SecretCipher(key=bytes(range(32)))) is True
