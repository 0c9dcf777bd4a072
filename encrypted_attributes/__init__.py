"""
Encrypted Attributes Library

Multi-recipient envelope encryption for configuration attributes: a JSON
value is encrypted so that any of a set of RSA key holders (clients, nodes,
users) can read it, and re-keyed when that set changes.

Quick Start
-----------
```python
from encrypted_attributes import (
    EncryptedAttribute,
    KeyResolver,
    LocalIdentity,
    PrivateKeyHandle,
    RecipientCache,
    StaticDirectory,
)

admin_key = PrivateKeyHandle.generate()
directory = StaticDirectory()
directory.add_client("admin1", admin_key.public_key, admin=True)

enc_attr = EncryptedAttribute(
    {"version": 2, "client_search": "admin:true"},
    resolver=KeyResolver(directory, RecipientCache()),
    local=LocalIdentity(key=admin_key),
)

# Encrypt for every admin client
envelope = enc_attr.create({"password": "s3cr3t"})

# Decrypt with the local key
value = enc_attr.load(envelope)

# Re-key in place when the admins change
directory.add_client("admin2", PrivateKeyHandle.generate().public_key, admin=True)
enc_attr.resolver.cache.clear()
enc_attr.update(envelope)
```

Key Features
------------
- **Three envelope versions**: RSA-OAEP only (0), AES-256-CBC + HMAC-SHA256 (1),
  AES-256-GCM (2)
- **Fingerprint identity**: Keys are compared by SHA-1 of their DER public key,
  whatever their encoding
- **Reconciliation**: Envelopes are rewritten only when their readers change
- **Tamper detection**: Recipient lists are authenticated in versions 1 and 2
- **Recipient cache**: LRU + TTL cache of directory lookups per category
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesCbcCipher,
    AesGcmCipher,
    EncryptedData,
    HmacSha256,
    RsaCipher,
    SecureKey,
    generate_random_bytes,
)

# =============================================================================
# Key Exports
# =============================================================================

from .keys import (
    PrivateKeyHandle,
    PublicKeyHandle,
    RecipientKeySet,
    fingerprint,
    load_private_key,
    load_public_key,
)

# =============================================================================
# Envelope Exports
# =============================================================================

from .envelope import (
    ENVELOPE_VERSIONS,
    LATEST_VERSION,
    Envelope,
    EnvelopeV0,
    EnvelopeV1,
    EnvelopeV2,
)

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    ArgumentError,
    ClientNotFound,
    ConfigError,
    CryptoError,
    DecryptionFailure,
    EncryptedAttributeError,
    EncryptionFailure,
    InsufficientPrivileges,
    InvalidKey,
    InvalidPublicKey,
    MessageAuthenticationFailure,
    RequirementsFailure,
    SearchFailure,
    StorageError,
    UnacceptableFormat,
    UnsupportedFormat,
)

# =============================================================================
# Collaborator Exports
# =============================================================================

from .cache import CacheLRU, RecipientCache
from .directory import KeyDirectory, KeyResolver, StaticDirectory
from .local import LocalIdentity
from .storage import (
    AttributeStore,
    JsonFileAttributeStore,
    MemoryAttributeStore,
    parse_attribute_path,
)

# =============================================================================
# Engine Exports (Primary API)
# =============================================================================

from .config import EncryptedAttributeConfig
from .engine import EncryptedAttribute

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesCbcCipher",
    "AesGcmCipher",
    "EncryptedData",
    "HmacSha256",
    "RsaCipher",
    "SecureKey",
    "generate_random_bytes",
    # Keys
    "PrivateKeyHandle",
    "PublicKeyHandle",
    "RecipientKeySet",
    "fingerprint",
    "load_private_key",
    "load_public_key",
    # Envelopes
    "ENVELOPE_VERSIONS",
    "LATEST_VERSION",
    "Envelope",
    "EnvelopeV0",
    "EnvelopeV1",
    "EnvelopeV2",
    # Errors
    "EncryptedAttributeError",
    "UnacceptableFormat",
    "UnsupportedFormat",
    "RequirementsFailure",
    "CryptoError",
    "EncryptionFailure",
    "DecryptionFailure",
    "MessageAuthenticationFailure",
    "InvalidKey",
    "InvalidPublicKey",
    "ArgumentError",
    "ClientNotFound",
    "InsufficientPrivileges",
    "SearchFailure",
    "StorageError",
    "ConfigError",
    # Collaborators
    "CacheLRU",
    "RecipientCache",
    "KeyDirectory",
    "KeyResolver",
    "StaticDirectory",
    "LocalIdentity",
    "AttributeStore",
    "JsonFileAttributeStore",
    "MemoryAttributeStore",
    "parse_attribute_path",
    # Engine (Primary API)
    "EncryptedAttributeConfig",
    "EncryptedAttribute",
]
