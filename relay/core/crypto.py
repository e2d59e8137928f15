"""
Credential Vault: AES-256-GCM encryption for OAuth tokens at rest.

Ciphertext format (stable, stored in oauth_connections)::

    v1:<base64url nonce>:<base64url ciphertext ‖ tag>

The nonce is a random 12 bytes per encryption, so encrypting the same
token twice yields different blobs.
"""
from __future__ import annotations

import base64
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from relay.core.exceptions import TokenDecryptionError

CIPHERTEXT_VERSION = "v1"
KEY_SIZE_BYTES = 32
_NONCE_SIZE = 12  # 96-bit nonce recommended by NIST for AES-GCM

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def b64url_encode(data: bytes) -> str:
    """base64url without padding"""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """base64url decode, tolerating missing padding"""
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def parse_encryption_key(raw: str) -> bytes:
    """
    Decode a configured encryption key into raw bytes.

    Accepts 64 hex characters or standard base64. The decoded key must be
    exactly 32 bytes (AES-256); anything else raises ValueError so a bad
    deployment fails at startup instead of at the first decryption.
    """
    key = (raw or "").strip()
    if not key:
        raise ValueError("Encryption key is empty")

    if _HEX_KEY_RE.match(key):
        return bytes.fromhex(key)

    try:
        decoded = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Encryption key is neither 64 hex chars nor valid base64") from e

    if len(decoded) != KEY_SIZE_BYTES:
        raise ValueError(
            f"Encryption key must decode to {KEY_SIZE_BYTES} bytes, got {len(decoded)}"
        )
    return decoded


class CredentialVault:
    """Encrypts and decrypts OAuth tokens with a single AES-256 key"""

    def __init__(self, key: bytes | str):
        if isinstance(key, str):
            key = parse_encryption_key(key)
        if len(key) != KEY_SIZE_BYTES:
            raise ValueError(
                f"Encryption key must be {KEY_SIZE_BYTES} bytes, got {len(key)}"
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_SIZE)
        ct = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return f"{CIPHERTEXT_VERSION}:{b64url_encode(nonce)}:{b64url_encode(ct)}"

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a blob produced by encrypt().

        Raises:
            TokenDecryptionError: unknown format, bad encoding, wrong key or tampered data.
        """
        parts = (blob or "").split(":")
        if len(parts) != 3 or parts[0] != CIPHERTEXT_VERSION:
            raise TokenDecryptionError("Unsupported ciphertext format")

        try:
            nonce = b64url_decode(parts[1])
            ct = b64url_decode(parts[2])
        except (binascii.Error, ValueError) as e:
            raise TokenDecryptionError("Ciphertext is not valid base64url") from e

        if len(nonce) != _NONCE_SIZE:
            raise TokenDecryptionError("Ciphertext nonce has wrong length")

        try:
            return self._aesgcm.decrypt(nonce, ct, None).decode("utf-8")
        except InvalidTag as e:
            raise TokenDecryptionError("Ciphertext authentication failed") from e


def get_vault(raw_key: str | None = None) -> CredentialVault:
    """
    Build a vault from configuration.

    Raises:
        ConfigurationError: the encryption key is not configured.
    """
    from relay.core.config import settings
    from relay.core.exceptions import ConfigurationError

    key = raw_key if raw_key is not None else settings.OAUTH_TOKEN_ENCRYPTION_KEY
    if not key:
        raise ConfigurationError("OAUTH_TOKEN_ENCRYPTION_KEY is not configured")
    return CredentialVault(key)
