"""
AES-256-GCM primitives behind the placeholder codec.

This module provides:
- SecureKey: The field encryption key, never printed
- EncryptedData: One field's nonce and tagged ciphertext
- AesGcmCipher: Encrypt/decrypt a single field value

Envelope layout, identical for every stored placeholder:
    nonce (12 bytes) || ciphertext (len(plaintext) bytes) || tag (16 bytes)
"""

from __future__ import annotations

import binascii
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailure, ConfigurationError

AES_256_KEY_SIZE: int = 32
NONCE_SIZE: int = 12
TAG_SIZE: int = 16


class SecureKey:
    """
    Field encryption key.

    Held in a bytearray that is overwritten when the object is collected.
    Collection timing is up to the interpreter, so the wipe is best-effort.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        """
        Wrap raw key material.

        Args:
            key_bytes: Exactly 32 bytes

        Raises:
            ConfigurationError: If the material is not bytes or not 32 bytes long
        """
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise ConfigurationError("Encryption key must be bytes")
        if len(key_bytes) != AES_256_KEY_SIZE:
            raise ConfigurationError(
                f"Encryption key must be {AES_256_KEY_SIZE} bytes, got {len(key_bytes)}"
            )
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """New random key (provisioning and tests)."""
        return cls(secrets.token_bytes(AES_256_KEY_SIZE))

    @classmethod
    def from_hex(cls, key_hex: Optional[str]) -> SecureKey:
        """
        Parse the hex form stored in system settings.

        Args:
            key_hex: 64 hex characters, surrounding whitespace ignored

        Returns:
            SecureKey instance

        Raises:
            ConfigurationError: If the key is unset or malformed
        """
        if not key_hex or not key_hex.strip():
            raise ConfigurationError("Encryption key not set")
        try:
            raw = binascii.unhexlify(key_hex.strip())
        except (binascii.Error, ValueError):
            # Never echo the offending value
            raise ConfigurationError("Encryption key is not valid hex") from None
        return cls(raw)

    def as_bytes(self) -> bytes:
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __repr__(self) -> str:
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        if hasattr(self, "_bytes"):
            self._bytes[:] = bytes(len(self._bytes))


@dataclass
class EncryptedData:
    """A single encrypted field value. ``ciphertext`` ends with the GCM tag."""

    nonce: bytes
    ciphertext: bytes

    def to_aead_blob(self) -> bytes:
        """Serialize as ``nonce || ciphertext || tag``."""
        return self.nonce + self.ciphertext

    @classmethod
    def from_aead_blob(cls, blob: bytes) -> EncryptedData:
        """
        Split a serialized envelope.

        Raises:
            AuthenticationFailure: If the blob cannot hold a nonce and a tag
        """
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailure(f"Envelope too small ({len(blob)} bytes)")
        return cls(nonce=blob[:NONCE_SIZE], ciphertext=blob[NONCE_SIZE:])


class AesGcmCipher:
    """AES-256-GCM over whole field values, one random nonce per value."""

    @staticmethod
    def encrypt(key: SecureKey, plaintext: bytes) -> EncryptedData:
        """
        Encrypt one value.

        Args:
            key: Field encryption key
            plaintext: UTF-8 bytes of the field value

        Returns:
            EncryptedData holding the fresh nonce and tagged ciphertext
        """
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = AESGCM(key.as_bytes()).encrypt(nonce, plaintext, None)
        return EncryptedData(nonce=nonce, ciphertext=ciphertext)

    @staticmethod
    def decrypt(key: SecureKey, encrypted: EncryptedData) -> bytes:
        """
        Verify the tag and decrypt one value.

        Raises:
            AuthenticationFailure: If the nonce has the wrong size, the key is
                wrong or any byte of the envelope was altered
        """
        if len(encrypted.nonce) != NONCE_SIZE:
            raise AuthenticationFailure(f"Nonce must be {NONCE_SIZE} bytes")

        try:
            return AESGCM(key.as_bytes()).decrypt(encrypted.nonce, encrypted.ciphertext, None)
        except InvalidTag:
            # Same message for every cause
            raise AuthenticationFailure("Decryption failed") from None
