"""
Field Encryption

Encrypts survey fields tagged ``@ENCRYPT`` (chiefly participant emails) into
placeholders that still validate as email addresses, hides them on every read
surface, and decrypts them only at the moment a message is sent.

Quick Start
-----------
```python
from field_encryption import FieldCodec, SecureKey, StaticKeyProvider

codec = FieldCodec(StaticKeyProvider(SecureKey.generate()))
placeholder = codec.encrypt("alice@example.org")   # ENC_...@xx.xx
codec.is_encrypted(placeholder)                     # True
codec.decrypt(placeholder)                          # "alice@example.org"
```

Key Features
------------
- **AES-256-GCM**: Authenticated envelope (nonce || ciphertext || tag)
- **Email-shaped placeholders**: ``ENC_<url-safe base64>@xx.xx``
- **Encrypt once**: Reentrancy guard plus shape check make re-runs no-ops
- **Masking**: Forms, reports and survey pages show ``[ENCRYPTED]``
- **Delivery queue**: Polling worker decrypts recipients and sends invitations
- **Outbound intercept**: Ad-hoc mail to placeholders is decrypted and re-sent

Modules
-------
- `crypto`: AES-256-GCM primitives
- `codec`: Placeholder encoding and the ``is_encrypted`` predicate
- `guard`: Reentrancy guard
- `encryptor`: Write-path record encryption
- `masking`: Display masking
- `delivery`: Delivery queue processor
- `intercept`: Outbound email intercept
- `hooks`: Platform hook boundary
- `storage`: Storage interfaces and in-memory backends
- `postgres`: PostgreSQL backends
- `mailer`: Mail transport
- `config`: Worker settings
- `worker`: Delivery worker CLI
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto and Codec Exports
# =============================================================================

from .codec import (
    PLACEHOLDER_DOMAIN,
    PLACEHOLDER_PREFIX,
    FieldCodec,
    decrypt_value,
    encrypt_value,
    is_encrypted,
)
from .crypto import AES_256_KEY_SIZE, NONCE_SIZE, TAG_SIZE, AesGcmCipher, EncryptedData, SecureKey
from .keys import EnvironmentKeyProvider, KeyProvider, StaticKeyProvider

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    AuthenticationFailure,
    ConfigurationError,
    DeliveryError,
    FieldEncryptionError,
    StorageError,
    TemplateNotFoundError,
)

# =============================================================================
# Component Exports
# =============================================================================

from .delivery import DeliveryQueueProcessor
from .encryptor import RecordEncryptor
from .guard import ReentrancyGuard
from .hooks import FieldEncryptionModule, MaskedForm
from .intercept import OutboundIntercept
from .masking import ENCRYPTED_DISPLAY_TOKEN, mask, mask_record, mask_rows
from .metadata import ENCRYPT_ACTION_TAG, TaggedFieldResolver, find_tagged_fields
from .models import (
    Attachment,
    BatchResult,
    EncryptionOutcome,
    EncryptionStatus,
    MessageTemplate,
    OutboundEmail,
    QueueEntry,
    QueueStatus,
    RecordCoordinate,
)

# =============================================================================
# Storage Exports
# =============================================================================

from .mailer import InMemoryMailer, Mailer, SmtpMailer, SmtpSettings
from .storage import (
    AuditLog,
    FieldMetadataSource,
    InMemoryAuditLog,
    InMemoryFieldMetadata,
    InMemoryQueueStore,
    InMemoryRecordStore,
    InMemoryTemplateStore,
    QueueClaim,
    QueueStore,
    RecordStore,
    TemplateStore,
)
from .postgres import (
    PostgresAuditLog,
    PostgresFieldMetadata,
    PostgresQueueStore,
    PostgresRecordStore,
    PostgresTemplateStore,
)

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto / codec
    "AES_256_KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "EncryptedData",
    "SecureKey",
    "PLACEHOLDER_PREFIX",
    "PLACEHOLDER_DOMAIN",
    "FieldCodec",
    "encrypt_value",
    "decrypt_value",
    "is_encrypted",
    "KeyProvider",
    "EnvironmentKeyProvider",
    "StaticKeyProvider",
    # Errors
    "FieldEncryptionError",
    "ConfigurationError",
    "AuthenticationFailure",
    "StorageError",
    "TemplateNotFoundError",
    "DeliveryError",
    # Components
    "ReentrancyGuard",
    "RecordEncryptor",
    "DeliveryQueueProcessor",
    "OutboundIntercept",
    "FieldEncryptionModule",
    "MaskedForm",
    "TaggedFieldResolver",
    "find_tagged_fields",
    "ENCRYPT_ACTION_TAG",
    "ENCRYPTED_DISPLAY_TOKEN",
    "mask",
    "mask_record",
    "mask_rows",
    # Models
    "RecordCoordinate",
    "QueueEntry",
    "QueueStatus",
    "MessageTemplate",
    "OutboundEmail",
    "Attachment",
    "EncryptionOutcome",
    "EncryptionStatus",
    "BatchResult",
    # Storage / transport
    "FieldMetadataSource",
    "RecordStore",
    "QueueStore",
    "QueueClaim",
    "TemplateStore",
    "AuditLog",
    "InMemoryFieldMetadata",
    "InMemoryRecordStore",
    "InMemoryQueueStore",
    "InMemoryTemplateStore",
    "InMemoryAuditLog",
    "Mailer",
    "SmtpMailer",
    "SmtpSettings",
    "InMemoryMailer",
    "PostgresFieldMetadata",
    "PostgresRecordStore",
    "PostgresQueueStore",
    "PostgresTemplateStore",
    "PostgresAuditLog",
]
