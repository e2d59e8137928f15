"""
Credential vault: AES-256-GCM token encryption and key parsing.
"""
import base64

import pytest

from relay.core.crypto import CredentialVault, get_vault, parse_encryption_key
from relay.core.exceptions import ConfigurationError, TokenDecryptionError

HEX_KEY = "ab" * 32


class TestKeyParsing:

    @pytest.mark.unit
    def test_hex_key(self):
        assert parse_encryption_key(HEX_KEY) == bytes.fromhex(HEX_KEY)

    @pytest.mark.unit
    def test_base64_key(self):
        raw = bytes(range(32))
        assert parse_encryption_key(base64.b64encode(raw).decode()) == raw

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "ab" * 16,                                   # 16 bytes of hex is valid base64 → 24 bytes
            base64.b64encode(b"x" * 16).decode(),       # AES-128 key
            base64.b64encode(b"x" * 33).decode(),
            "not a key!",
        ],
    )
    def test_wrong_length_or_encoding_fails_fast(self, raw):
        with pytest.raises(ValueError):
            parse_encryption_key(raw)

    @pytest.mark.unit
    def test_vault_rejects_short_raw_key(self):
        with pytest.raises(ValueError):
            CredentialVault(b"short")

    @pytest.mark.unit
    def test_get_vault_without_key_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            get_vault("")


class TestEncryptDecrypt:

    @pytest.mark.unit
    def test_ciphertext_format(self):
        blob = CredentialVault(HEX_KEY).encrypt("ya29.secret-token")

        version, nonce, ct = blob.split(":")
        assert version == "v1"
        assert "=" not in nonce and "=" not in ct
        assert "ya29" not in blob

    @pytest.mark.unit
    def test_decrypt_returns_plaintext(self):
        vault = CredentialVault(HEX_KEY)
        assert vault.decrypt(vault.encrypt("refresh-token")) == "refresh-token"

    @pytest.mark.unit
    def test_each_encryption_uses_fresh_nonce(self):
        vault = CredentialVault(HEX_KEY)
        assert vault.encrypt("same") != vault.encrypt("same")

    @pytest.mark.unit
    def test_wrong_key_raises(self):
        blob = CredentialVault(HEX_KEY).encrypt("token")
        with pytest.raises(TokenDecryptionError):
            CredentialVault("cd" * 32).decrypt(blob)

    @pytest.mark.unit
    def test_tampered_ciphertext_raises(self):
        vault = CredentialVault(HEX_KEY)
        version, nonce, ct = vault.encrypt("token").split(":")
        flipped = ct[:-2] + ("A" if ct[-2] != "A" else "B") + ct[-1]
        with pytest.raises(TokenDecryptionError):
            vault.decrypt(f"{version}:{nonce}:{flipped}")

    @pytest.mark.unit
    @pytest.mark.parametrize("blob", ["", "plaintext", "v2:abc:def", "v1:only-two", "v1:!!:??"])
    def test_malformed_blob_raises(self, blob):
        with pytest.raises(TokenDecryptionError):
            CredentialVault(HEX_KEY).decrypt(blob)
