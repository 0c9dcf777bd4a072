"""
RSA key handles and recipient key sets.

This module provides:
- PublicKeyHandle: RSA public key identified by its fingerprint
- PrivateKeyHandle: RSA private key with its public counterpart
- RecipientKeySet: Ordered recipient list deduplicated by fingerprint
- load_public_key / load_private_key: Parsing of PEM, DER and key objects

The fingerprint is the lowercase hex SHA-1 of the DER SubjectPublicKeyInfo
encoding, so the same key read from a PKCS#1 PEM, an SPKI PEM, DER bytes or
a private key always gets the same fingerprint.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import InvalidKey, InvalidPublicKey

KeyMaterial = Union[
    "PublicKeyHandle",
    "PrivateKeyHandle",
    rsa.RSAPublicKey,
    rsa.RSAPrivateKey,
    str,
    bytes,
]


def fingerprint(public_key: rsa.RSAPublicKey) -> str:
    """Compute the fingerprint of an RSA public key."""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha1(der).hexdigest()


@dataclass(frozen=True)
class PublicKeyHandle:
    """
    RSA public key with its fingerprint.

    Equality and hashing use the fingerprint only.
    """

    fingerprint: str
    key: rsa.RSAPublicKey = field(compare=False, repr=False)

    @classmethod
    def from_key(cls, key: rsa.RSAPublicKey) -> PublicKeyHandle:
        return cls(fingerprint=fingerprint(key), key=key)

    @property
    def key_size(self) -> int:
        return self.key.key_size

    def to_pem(self) -> str:
        """Encode as an SPKI PEM string."""
        return self.key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")


class PrivateKeyHandle:
    """RSA private key. Never exposes key material in its repr."""

    __slots__ = ("_key", "_public")

    def __init__(self, key: rsa.RSAPrivateKey) -> None:
        if not isinstance(key, rsa.RSAPrivateKey):
            raise InvalidKey("Not an RSA private key")
        self._key = key
        self._public = PublicKeyHandle.from_key(key.public_key())

    @classmethod
    def generate(cls, key_size: int = 2048) -> PrivateKeyHandle:
        """Generate a new RSA private key."""
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=key_size))

    @property
    def key(self) -> rsa.RSAPrivateKey:
        return self._key

    @property
    def public_key(self) -> PublicKeyHandle:
        return self._public

    @property
    def fingerprint(self) -> str:
        return self._public.fingerprint

    def to_pem(self) -> str:
        """Encode as an unencrypted PKCS#8 PEM string."""
        return self._key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PrivateKeyHandle):
            return NotImplemented
        return self.fingerprint == other.fingerprint

    def __hash__(self) -> int:
        return hash(("private", self.fingerprint))

    def __repr__(self) -> str:
        return f"PrivateKeyHandle(fingerprint={self.fingerprint!r})"


def _to_bytes(material: Union[str, bytes]) -> bytes:
    if isinstance(material, str):
        return material.strip().encode("utf-8")
    return material.strip() if material.lstrip().startswith(b"-----") else material


def _is_pem(data: bytes) -> bool:
    return data.startswith(b"-----BEGIN")


def _parse_public(data: bytes) -> Any:
    loaders = (
        (serialization.load_pem_public_key, serialization.load_pem_private_key)
        if _is_pem(data)
        else (serialization.load_der_public_key, serialization.load_der_private_key)
    )
    try:
        return loaders[0](data)
    except (ValueError, UnsupportedAlgorithm):
        pass
    # A private key also carries its public half.
    try:
        return loaders[1](data, password=None).public_key()
    except (ValueError, TypeError, UnsupportedAlgorithm):
        raise InvalidKey("The provided key is not a valid RSA key") from None


def load_public_key(material: KeyMaterial) -> PublicKeyHandle:
    """
    Parse any supported key representation into a PublicKeyHandle.

    Args:
        material: PEM/DER text or bytes, a cryptography RSA key object, or an
            existing handle. Private keys yield their public counterpart.

    Raises:
        InvalidKey: If the material cannot be parsed
        InvalidPublicKey: If it parses but is not an RSA public key
    """
    if isinstance(material, PublicKeyHandle):
        return material
    if isinstance(material, PrivateKeyHandle):
        return material.public_key
    if isinstance(material, rsa.RSAPrivateKey):
        return PublicKeyHandle.from_key(material.public_key())
    if isinstance(material, (str, bytes)):
        key = _parse_public(_to_bytes(material))
    else:
        key = material

    if not isinstance(key, rsa.RSAPublicKey):
        raise InvalidPublicKey("The provided key is not a valid RSA public key")
    return PublicKeyHandle.from_key(key)


def load_private_key(
    material: Union[PrivateKeyHandle, rsa.RSAPrivateKey, str, bytes],
    password: Optional[bytes] = None,
) -> PrivateKeyHandle:
    """
    Parse a private key.

    Raises:
        InvalidKey: If the material is not an RSA private key
    """
    if isinstance(material, PrivateKeyHandle):
        return material
    if isinstance(material, rsa.RSAPrivateKey):
        return PrivateKeyHandle(material)
    if not isinstance(material, (str, bytes)):
        raise InvalidKey("The provided key is not a valid RSA private key")

    data = _to_bytes(material)
    loader = (
        serialization.load_pem_private_key
        if _is_pem(data)
        else serialization.load_der_private_key
    )
    try:
        key = loader(data, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        raise InvalidKey("The provided key is not a valid RSA private key") from None
    return PrivateKeyHandle(key)


_SINGLE_KEY_TYPES = (
    str,
    bytes,
    PublicKeyHandle,
    PrivateKeyHandle,
    rsa.RSAPublicKey,
    rsa.RSAPrivateKey,
)


class RecipientKeySet:
    """
    Ordered, immutable set of recipient public keys.

    Duplicates (same fingerprint) are dropped, the first occurrence wins.
    Two sets compare equal when they hold the same fingerprints, whatever
    their order.
    """

    __slots__ = ("_keys", "_fingerprints")

    def __init__(self, keys: Union[KeyMaterial, Iterable[KeyMaterial], None] = None) -> None:
        if keys is None:
            keys = ()
        elif isinstance(keys, _SINGLE_KEY_TYPES):
            keys = (keys,)

        handles = []
        seen = set()
        for material in keys:
            handle = load_public_key(material)
            if handle.fingerprint in seen:
                continue
            seen.add(handle.fingerprint)
            handles.append(handle)

        self._keys = tuple(handles)
        self._fingerprints = frozenset(seen)

    def fingerprints(self) -> frozenset[str]:
        return self._fingerprints

    def __iter__(self) -> Iterator[PublicKeyHandle]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __bool__(self) -> bool:
        return bool(self._keys)

    def __contains__(self, material: object) -> bool:
        try:
            return load_public_key(material).fingerprint in self._fingerprints  # type: ignore[arg-type]
        except InvalidKey:
            return False

    def __add__(self, other: Iterable[KeyMaterial]) -> RecipientKeySet:
        return RecipientKeySet(list(self._keys) + list(RecipientKeySet(other)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RecipientKeySet):
            return NotImplemented
        return self._fingerprints == other._fingerprints

    def __hash__(self) -> int:
        return hash(self._fingerprints)

    def __repr__(self) -> str:
        return f"RecipientKeySet({[k.fingerprint for k in self._keys]!r})"
