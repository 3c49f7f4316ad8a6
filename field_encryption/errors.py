"""
Exception classes for field encryption operations.

This module defines the exception hierarchy shared by the codec, the record
encryptor, the delivery queue and the storage adapters.
"""

from __future__ import annotations


class FieldEncryptionError(Exception):
    """Base exception for all field encryption operations."""

    pass


class ConfigurationError(FieldEncryptionError):
    """Encryption key or settings are missing or malformed."""

    pass


class AuthenticationFailure(FieldEncryptionError):
    """Placeholder could not be decrypted (tag mismatch or malformed envelope)."""

    pass


class StorageError(FieldEncryptionError):
    """Storage backend error (record store, queue store, metadata, audit log)."""

    pass


class TemplateNotFoundError(StorageError):
    """Message template referenced by a queue entry does not exist."""

    pass


class DeliveryError(FieldEncryptionError):
    """Outbound message could not be sent."""

    pass
