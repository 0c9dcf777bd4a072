"""
Cryptographic primitives for encrypted attribute envelopes.

This module provides:
- SecureKey: Secure key wrapper with automatic zeroization
- EncryptedData: Encrypted payload with nonce/IV and ciphertext
- AesGcmCipher: AES-256-GCM authenticated encryption (version 2 envelopes)
- AesCbcCipher: AES-256-CBC with PKCS7 padding (version 1 envelopes)
- HmacSha256: HMAC-SHA256 sign and constant-time verify
- RsaCipher: RSA-OAEP encryption of payloads and wrapped keys
- derive_key: HKDF-SHA256 key derivation
- assert_aead_requirements_met: AEAD support check for the crypto backend
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import (
    CryptoError,
    DecryptionFailure,
    EncryptionFailure,
    MessageAuthenticationFailure,
    RequirementsFailure,
)

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
NONCE_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (authentication tag)
CBC_IV_SIZE: int = 16  # AES block size
HMAC_KEY_SIZE: int = 32
HMAC_SIZE: int = 32  # SHA-256 digest

AEAD_ALGORITHM: str = "aes-256-gcm"
CBC_ALGORITHM: str = "aes-256-cbc"
HMAC_ALGORITHM: str = "sha256"


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        """
        Create a SecureKey from raw bytes.

        Args:
            key_bytes: Raw key material (should be 32 bytes for AES-256)
        """
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise CryptoError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Generate a cryptographically secure random 32-byte key."""
        return cls(generate_random_bytes(AES_256_KEY_SIZE))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def __len__(self) -> int:
        """Return key length in bytes."""
        return len(self._bytes)

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


@dataclass
class EncryptedData:
    """
    Encrypted data container with nonce (or IV) and ciphertext.

    For AES-GCM the ciphertext includes the 16-byte authentication tag
    appended by AESGCM.
    """

    nonce: bytes
    ciphertext: bytes

    def split_tag(self) -> tuple[bytes, bytes]:
        """Split an AES-GCM ciphertext into (data, tag)."""
        return self.ciphertext[:-TAG_SIZE], self.ciphertext[-TAG_SIZE:]

    @classmethod
    def from_parts(cls, nonce: bytes, data: bytes, tag: bytes) -> EncryptedData:
        """Join separately stored AES-GCM data and tag."""
        return cls(nonce=nonce, ciphertext=data + tag)


def _check_key_size(key: SecureKey, error: type[Exception]) -> None:
    if len(key) != AES_256_KEY_SIZE:
        raise error(f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}")


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption.

    Provides static methods for encryption and decryption with optional
    Additional Authenticated Data (AAD) for binding.
    """

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
        aad: Optional[bytes] = None,
    ) -> EncryptedData:
        """
        Encrypt plaintext with AES-256-GCM.

        Args:
            key: 32-byte encryption key
            plaintext: Data to encrypt
            aad: Optional Additional Authenticated Data for binding

        Returns:
            EncryptedData with nonce and ciphertext (includes auth tag)

        Raises:
            EncryptionFailure: If key size is invalid or encryption fails
        """
        _check_key_size(key, EncryptionFailure)

        nonce = generate_random_bytes(NONCE_SIZE)
        aesgcm = AESGCM(key.as_bytes())

        try:
            ciphertext = aesgcm.encrypt(nonce, plaintext, aad)
        except (ValueError, OverflowError):
            raise EncryptionFailure("Encryption failed") from None

        return EncryptedData(nonce=nonce, ciphertext=ciphertext)

    @staticmethod
    def decrypt(
        key: SecureKey,
        encrypted: EncryptedData,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt ciphertext with AES-256-GCM.

        Args:
            key: 32-byte decryption key
            encrypted: EncryptedData with nonce and ciphertext
            aad: Optional Additional Authenticated Data (must match encryption)

        Returns:
            Decrypted plaintext bytes

        Raises:
            DecryptionFailure: If key/nonce size is invalid
            MessageAuthenticationFailure: If the authentication tag does not match
        """
        _check_key_size(key, DecryptionFailure)

        if len(encrypted.nonce) != NONCE_SIZE:
            raise DecryptionFailure(
                f"Invalid nonce size: expected {NONCE_SIZE}, got {len(encrypted.nonce)}"
            )

        aesgcm = AESGCM(key.as_bytes())

        try:
            return aesgcm.decrypt(encrypted.nonce, encrypted.ciphertext, aad)
        except InvalidTag:
            # No library error text
            raise MessageAuthenticationFailure("Authentication tag mismatch") from None
        except ValueError:
            raise DecryptionFailure("Decryption failed") from None


class AesCbcCipher:
    """
    AES-256-CBC encryption with PKCS7 padding.

    Unauthenticated: callers must verify an HMAC before decrypting.
    """

    @staticmethod
    def encrypt(key: SecureKey, plaintext: bytes) -> EncryptedData:
        """
        Encrypt plaintext with AES-256-CBC and a fresh random IV.

        Raises:
            EncryptionFailure: If key size is invalid or encryption fails
        """
        _check_key_size(key, EncryptionFailure)

        iv = generate_random_bytes(CBC_IV_SIZE)
        try:
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded = padder.update(plaintext) + padder.finalize()
            encryptor = Cipher(algorithms.AES(key.as_bytes()), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
        except ValueError:
            raise EncryptionFailure("Encryption failed") from None

        return EncryptedData(nonce=iv, ciphertext=ciphertext)

    @staticmethod
    def decrypt(key: SecureKey, encrypted: EncryptedData) -> bytes:
        """
        Decrypt AES-256-CBC ciphertext and strip the PKCS7 padding.

        Raises:
            DecryptionFailure: On invalid sizes or bad padding
        """
        _check_key_size(key, DecryptionFailure)

        if len(encrypted.nonce) != CBC_IV_SIZE:
            raise DecryptionFailure(
                f"Invalid IV size: expected {CBC_IV_SIZE}, got {len(encrypted.nonce)}"
            )

        try:
            decryptor = Cipher(
                algorithms.AES(key.as_bytes()), modes.CBC(encrypted.nonce)
            ).decryptor()
            padded = decryptor.update(encrypted.ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            # Padding errors are not distinguished from other failures
            raise DecryptionFailure("Decryption failed") from None


class HmacSha256:
    """HMAC-SHA256 signing with constant-time verification."""

    @staticmethod
    def sign(key: SecureKey, data: bytes) -> bytes:
        h = hmac.HMAC(key.as_bytes(), hashes.SHA256())
        h.update(data)
        return h.finalize()

    @staticmethod
    def verify(key: SecureKey, data: bytes, signature: bytes) -> None:
        """
        Verify an HMAC in constant time.

        Raises:
            MessageAuthenticationFailure: If the signature does not match
        """
        h = hmac.HMAC(key.as_bytes(), hashes.SHA256())
        h.update(data)
        try:
            h.verify(signature)
        except InvalidSignature:
            raise MessageAuthenticationFailure("HMAC mismatch") from None


def derive_key(key: SecureKey, info: bytes, length: int = HMAC_KEY_SIZE) -> SecureKey:
    """
    Derive a subkey from a symmetric key with HKDF-SHA256.

    Args:
        key: Input key material
        info: Context label, distinct per purpose
        length: Output length in bytes

    Returns:
        Derived SecureKey
    """
    hkdf = HKDF(algorithm=hashes.SHA256(), length=length, salt=None, info=info)
    return SecureKey(hkdf.derive(key.as_bytes()))


class RsaCipher:
    """RSA-OAEP (SHA-256, MGF1-SHA-256) encryption."""

    @staticmethod
    def _padding() -> asym_padding.OAEP:
        return asym_padding.OAEP(
            mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None,
        )

    @staticmethod
    def max_plaintext_size(public_key: rsa.RSAPublicKey) -> int:
        """Largest plaintext one OAEP block can carry for this key."""
        return public_key.key_size // 8 - 2 * hashes.SHA256.digest_size - 2

    @classmethod
    def encrypt(cls, public_key: rsa.RSAPublicKey, plaintext: bytes) -> bytes:
        """
        Raises:
            EncryptionFailure: If the plaintext does not fit the key
        """
        if len(plaintext) > cls.max_plaintext_size(public_key):
            raise EncryptionFailure(
                f"Data too large for a {public_key.key_size}-bit RSA key"
            )
        try:
            return public_key.encrypt(plaintext, cls._padding())
        except ValueError:
            raise EncryptionFailure("RSA encryption failed") from None

    @classmethod
    def decrypt(cls, private_key: rsa.RSAPrivateKey, ciphertext: bytes) -> bytes:
        """
        Raises:
            DecryptionFailure: On any RSA or padding error
        """
        try:
            return private_key.decrypt(ciphertext, cls._padding())
        except ValueError:
            # No library error text
            raise DecryptionFailure("RSA decryption failed") from None


_AEAD_CIPHERS = {
    AEAD_ALGORITHM: (algorithms.AES, AES_256_KEY_SIZE, modes.GCM, NONCE_SIZE),
}


def aead_supported(algorithm: str) -> bool:
    """Return True if the crypto backend supports the named AEAD cipher."""
    params = _AEAD_CIPHERS.get(algorithm)
    if params is None:
        return False
    algorithm_cls, key_size, mode_cls, iv_size = params
    return default_backend().cipher_supported(
        algorithm_cls(b"\x00" * key_size), mode_cls(b"\x00" * iv_size)
    )


def assert_aead_requirements_met(algorithm: str) -> None:
    """
    Check that the crypto backend can run the given AEAD algorithm.

    Raises:
        RequirementsFailure: If the algorithm is unknown or unsupported
    """
    if not aead_supported(algorithm):
        raise RequirementsFailure(
            "The used encrypted attributes protocol version requires a "
            f'crypto backend with "{algorithm}" algorithm support'
        )


def generate_random_bytes(length: int) -> bytes:
    """
    Generate cryptographically secure random bytes.

    Args:
        length: Number of bytes to generate

    Returns:
        Random bytes of specified length
    """
    return secrets.token_bytes(length)
