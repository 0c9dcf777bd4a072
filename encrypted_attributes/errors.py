"""
Exception classes for encrypted attribute operations.

Every error raised by this package derives from EncryptedAttributeError.
"""

from __future__ import annotations


class EncryptedAttributeError(Exception):
    """Base exception for all encrypted attribute operations."""

    pass


# =============================================================================
# Envelope format errors
# =============================================================================


class UnacceptableFormat(EncryptedAttributeError):
    """Envelope is present but structurally invalid for its declared version."""

    pass


class UnsupportedFormat(EncryptedAttributeError):
    """Envelope version tag is unknown."""

    pass


class RequirementsFailure(EncryptedAttributeError):
    """The requested envelope version cannot be used with this crypto backend."""

    pass


# =============================================================================
# Cryptographic errors
# =============================================================================


class CryptoError(EncryptedAttributeError):
    """Cryptographic operation failed (encryption, decryption, key handling)."""

    pass


class EncryptionFailure(CryptoError):
    """Encryption failed."""

    pass


class DecryptionFailure(CryptoError):
    """Decryption failed (wrong key, corrupt ciphertext or bad padding)."""

    pass


class MessageAuthenticationFailure(CryptoError):
    """HMAC or AEAD tag verification failed: the data has been tampered with."""

    pass


class InvalidKey(CryptoError):
    """Key material cannot be parsed."""

    pass


class InvalidPublicKey(InvalidKey):
    """Key material parses but is not a usable RSA public key."""

    pass


# =============================================================================
# Argument and collaborator errors
# =============================================================================


class ArgumentError(EncryptedAttributeError, ValueError):
    """Malformed attribute path, key list or user list."""

    pass


class ClientNotFound(EncryptedAttributeError):
    """Client, node or user not found in the key directory."""

    pass


class InsufficientPrivileges(EncryptedAttributeError):
    """Not allowed to read the requested public key."""

    pass


class SearchFailure(EncryptedAttributeError):
    """Directory search failed or the query is malformed."""

    pass


class StorageError(EncryptedAttributeError):
    """Attribute storage backend error."""

    pass


class ConfigError(EncryptedAttributeError):
    """Configuration error."""

    pass
