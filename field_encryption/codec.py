"""
Placeholder codec for encrypted field values.

An encrypted value is stored as a string that still validates as an email
address:

    ENC_<url-safe base64 of envelope, padding stripped>@xx.xx

where the envelope is ``nonce || ciphertext || tag`` (see ``crypto``). The
``xx.xx`` pseudo-domain is not routable, so a placeholder that escapes into a
mail transport bounces instead of reaching a stranger.

``is_encrypted`` is the only shape predicate in the package; the record
encryptor, masking, the delivery queue and the outbound intercept all branch on
it so that they agree with ``decrypt_value`` about what counts as encrypted.
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Any

from .crypto import AesGcmCipher, EncryptedData, SecureKey
from .errors import AuthenticationFailure
from .keys import KeyProvider

PLACEHOLDER_PREFIX = "ENC_"
PLACEHOLDER_DOMAIN = "xx.xx"

_PLACEHOLDER_BODY = (
    re.escape(PLACEHOLDER_PREFIX) + r"([A-Za-z0-9_-]+)@" + re.escape(PLACEHOLDER_DOMAIN)
)
_PLACEHOLDER_RE = re.compile(_PLACEHOLDER_BODY)

# Anchored form for database-side filtering (PostgreSQL POSIX regex)
PLACEHOLDER_PATTERN = "^" + _PLACEHOLDER_BODY + "$"


def is_encrypted(value: Any) -> bool:
    """Return True if ``value`` has the placeholder shape. No key access."""
    if not isinstance(value, str):
        return False
    return _PLACEHOLDER_RE.fullmatch(value) is not None


def encode_envelope(blob: bytes) -> str:
    """Wrap envelope bytes as a placeholder string."""
    encoded = base64.urlsafe_b64encode(blob).decode("ascii").rstrip("=")
    return f"{PLACEHOLDER_PREFIX}{encoded}@{PLACEHOLDER_DOMAIN}"


def decode_envelope(placeholder: str) -> bytes:
    """
    Extract envelope bytes from a placeholder string.

    Raises:
        AuthenticationFailure: If the value is not a placeholder or the payload
            is not valid base64
    """
    match = _PLACEHOLDER_RE.fullmatch(placeholder)
    if match is None:
        raise AuthenticationFailure("Value is not an encrypted placeholder")

    encoded = match.group(1)
    padded = encoded
    remainder = len(padded) % 4
    if remainder:
        padded += "=" * (4 - remainder)
    try:
        blob = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        raise AuthenticationFailure("Placeholder payload is not valid base64") from None

    # Trailing bits of the last character are ignored by the decoder; only the
    # canonical encoding is accepted so every character is covered by the tag.
    if base64.urlsafe_b64encode(blob).decode("ascii").rstrip("=") != encoded:
        raise AuthenticationFailure("Placeholder payload is not canonical base64")
    return blob


def encrypt_value(plaintext: str, key: SecureKey) -> str:
    """
    Encrypt a field value into a placeholder.

    Each call uses a fresh nonce, so encrypting the same plaintext twice gives
    two different placeholders that both decrypt to it.
    """
    encrypted = AesGcmCipher.encrypt(key, plaintext.encode("utf-8"))
    return encode_envelope(encrypted.to_aead_blob())


def decrypt_value(candidate: str, key: SecureKey) -> str:
    """
    Decrypt a placeholder, or return ``candidate`` unchanged if it is plaintext.

    Raises:
        AuthenticationFailure: If the value looks encrypted but the envelope is
            malformed or fails tag verification
    """
    if not is_encrypted(candidate):
        return candidate

    encrypted = EncryptedData.from_aead_blob(decode_envelope(candidate))
    plaintext = AesGcmCipher.decrypt(key, encrypted)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise AuthenticationFailure("Decrypted value is not valid UTF-8") from None


class FieldCodec:
    """
    Codec bound to a key provider.

    The key is fetched from the provider on every call, so a missing or
    malformed key raises ``ConfigurationError`` from the operation that needed
    it. ``is_encrypted`` never touches the provider.
    """

    def __init__(self, key_provider: KeyProvider) -> None:
        self._key_provider = key_provider

    @staticmethod
    def is_encrypted(value: Any) -> bool:
        return is_encrypted(value)

    def encrypt(self, plaintext: str) -> str:
        return encrypt_value(plaintext, self._key_provider())

    def decrypt(self, candidate: str) -> str:
        if not is_encrypted(candidate):
            return candidate
        return decrypt_value(candidate, self._key_provider())
