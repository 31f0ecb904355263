#!/usr/bin/env python3
"""Credential Vault for tenant POS credentials.

Encrypts and decrypts the client id / client secret a restaurant stores for
its POS connection. Values at rest use AES-256-GCM and are serialized as
three colon-delimited hex segments:

    <ivHex>:<authTagHex>:<cipherHex>

    - iv: 16 random bytes per encryption
    - authTag: 16-byte GCM tag
    - cipher: ciphertext bytes (same length as the plaintext)

The key is the first 32 bytes of the ENCRYPTION_KEY secret. It is read once
at startup; every other component receives the vault instance.

Security Notes:
    - Plaintext and ciphertext are never logged
    - Incomplete credential sets fail before any decryption is attempted

Example:
    >>> vault = CredentialVault.from_env()
    >>> stored = vault.encrypt("client-secret")
    >>> vault.decrypt(stored)
    'client-secret'
"""
import hashlib
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..sync.domain.entities import DecryptedCredentials
from .exceptions import (
    AuthenticationFailed,
    ConfigurationError,
    MalformedCiphertext,
    MissingCredentialFields,
)

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16

# Field names as they appear on the credential record
CREDENTIAL_FIELDS = ("clientId", "encryptedClientSecret", "locationId")


class CredentialVault:
    """AEAD encryption for tenant credentials.

    Attributes:
        key_id: Short non-reversible identifier for the active key (logging only)
    """

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError(
                "Encryption key is required. Set ENCRYPTION_KEY.",
                missing_keys=["ENCRYPTION_KEY"],
            )

        key = secret.encode("utf-8")[:KEY_LENGTH]
        if len(key) < KEY_LENGTH:
            raise ConfigurationError(
                f"ENCRYPTION_KEY must be at least {KEY_LENGTH} bytes",
                details={"key_length": len(key)},
            )

        self._aead = AESGCM(key)
        self.key_id = hashlib.sha256(key).hexdigest()[:8]

    @classmethod
    def from_env(cls, env_var: str = "ENCRYPTION_KEY") -> "CredentialVault":
        """Build a vault from process configuration."""
        return cls(os.getenv(env_var, ""))

    # ----------------------------------------
    # Single Values
    # ----------------------------------------

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string into <ivHex>:<authTagHex>:<cipherHex>."""
        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        cipher, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{cipher.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a value produced by encrypt().

        Raises:
            MalformedCiphertext: If the value is not three valid hex segments
            AuthenticationFailed: If the tag does not verify
        """
        iv, tag, cipher = self._split(ciphertext)
        try:
            plaintext = self._aead.decrypt(iv, cipher + tag, None)
        except InvalidTag as e:
            raise AuthenticationFailed(cause=e)
        return plaintext.decode("utf-8")

    @staticmethod
    def _split(ciphertext: str) -> tuple[bytes, bytes, bytes]:
        if not isinstance(ciphertext, str):
            raise MalformedCiphertext("Encrypted value must be a string")

        parts = ciphertext.split(":")
        if len(parts) != 3:
            raise MalformedCiphertext(segments=len(parts))

        iv_hex, tag_hex, cipher_hex = parts
        if len(iv_hex) != IV_LENGTH * 2:
            raise MalformedCiphertext("Invalid IV length", segments=3)
        if len(tag_hex) != TAG_LENGTH * 2:
            raise MalformedCiphertext("Invalid auth tag length", segments=3)

        try:
            return bytes.fromhex(iv_hex), bytes.fromhex(tag_hex), bytes.fromhex(cipher_hex)
        except ValueError as e:
            raise MalformedCiphertext("Encrypted value is not valid hex", segments=3, cause=e)

    # ----------------------------------------
    # Credential Sets
    # ----------------------------------------

    def decrypt_credential_set(self, record: dict[str, Any]) -> DecryptedCredentials:
        """Validate and decrypt a stored credential set.

        Args:
            record: Mapping with clientId, encryptedClientSecret, locationId

        Returns:
            DecryptedCredentials with client_id, client_secret, location_guid

        Raises:
            MissingCredentialFields: If any of the three fields is absent.
                No decryption is attempted in that case.
            MalformedCiphertext: If clientId or the secret is not valid ciphertext
            AuthenticationFailed: If either fails tag verification
        """
        missing = [name for name in CREDENTIAL_FIELDS if not record.get(name)]
        if missing:
            present = [name for name in CREDENTIAL_FIELDS if record.get(name)]
            raise MissingCredentialFields(missing=missing, present=present)

        return DecryptedCredentials(
            client_id=self.decrypt(record["clientId"]),
            client_secret=self.decrypt(record["encryptedClientSecret"]),
            location_guid=record["locationId"],
        )
