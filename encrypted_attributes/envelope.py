"""
Versioned encryption envelopes.

This module provides:
- Envelope: Common contract and version-tag dispatch
- EnvelopeV0: RSA encryption of the whole value for each recipient
- EnvelopeV1: AES-256-CBC data key wrapped with RSA, plus HMAC-SHA256
- EnvelopeV2: AES-256-GCM data key wrapped with RSA, recipients bound as AAD

Wire format (JSON-compatible dict, always tagged with its version):

    version 0: {"version": 0, "encrypted_data": {fingerprint: b64(rsa(json))}}

    version 1: {"version": 1,
                "encrypted_data": {"cipher": "aes-256-cbc", "iv": b64, "data": b64},
                "encrypted_secret": {fingerprint: b64(rsa(key))},
                "hmac": {"cipher": "sha256", "data": b64}}

    version 2: {"version": 2,
                "encrypted_data": {"cipher": "aes-256-gcm", "iv": b64, "data": b64,
                                   "auth_tag": b64},
                "encrypted_secret": {fingerprint: b64(rsa(key))}}

The version tag is read first and selects the decoder. A body that does not
match its version's shape is rejected, never decoded best-effort.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import re
from typing import Any, Dict, Iterable, Mapping, Optional

from .crypto import (
    AEAD_ALGORITHM,
    AES_256_KEY_SIZE,
    CBC_ALGORITHM,
    CBC_IV_SIZE,
    HMAC_ALGORITHM,
    HMAC_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesCbcCipher,
    AesGcmCipher,
    EncryptedData,
    HmacSha256,
    RsaCipher,
    SecureKey,
    assert_aead_requirements_met,
    derive_key,
)
from .errors import (
    ArgumentError,
    DecryptionFailure,
    UnacceptableFormat,
    UnsupportedFormat,
)
from .keys import KeyMaterial, PrivateKeyHandle, RecipientKeySet, load_private_key

VERSION_FIELD = "version"

HMAC_KEY_INFO = b"encrypted-attributes v1 hmac"

_FINGERPRINT_RE = re.compile(r"^[0-9a-f]{40}$")


# =============================================================================
# Encoding helpers
# =============================================================================


def _b64encode(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


def _b64decode(encoded: str, field: str) -> bytes:
    try:
        return base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        raise UnacceptableFormat(f"Invalid base64 in {field}") from None


def _canonical_json(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")


def json_encode(value: Any) -> bytes:
    """Serialize a JSON-compatible value for encryption."""
    try:
        return json.dumps(
            value, separators=(",", ":"), ensure_ascii=False, allow_nan=False
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise ArgumentError(f"Value is not JSON serializable: {e}")


def json_decode(data: bytes) -> Any:
    """Parse a decrypted value."""
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise DecryptionFailure("Decrypted data is not valid JSON") from None


def _require_mapping(value: Any, field: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise UnacceptableFormat(f"{field} must be a mapping")
    return value


def _require_exact_keys(value: Mapping[str, Any], expected: Iterable[str], field: str) -> None:
    if set(value.keys()) != set(expected):
        raise UnacceptableFormat(f"{field} has unexpected fields")


def _require_b64(value: Mapping[str, Any], key: str, field: str, size: Optional[int] = None) -> None:
    item = value.get(key)
    if not isinstance(item, str):
        raise UnacceptableFormat(f"{field}.{key} must be a string")
    decoded = _b64decode(item, f"{field}.{key}")
    if size is not None and len(decoded) != size:
        raise UnacceptableFormat(f"{field}.{key} has an invalid length")


def _require_recipient_map(value: Any, field: str) -> None:
    value = _require_mapping(value, field)
    if not value:
        raise UnacceptableFormat(f"{field} has no recipients")
    for fp, encrypted in value.items():
        if not isinstance(fp, str) or not _FINGERPRINT_RE.match(fp):
            raise UnacceptableFormat(f"{field} has an invalid key fingerprint")
        if not isinstance(encrypted, str):
            raise UnacceptableFormat(f"{field} values must be strings")
        _b64decode(encrypted, field)


# =============================================================================
# Envelope base
# =============================================================================


class Envelope:
    """
    Encrypted value for a set of RSA recipients.

    Subclasses implement one version of the wire format. Instances are
    created empty with Envelope.create(version) and filled by encrypt(), or
    parsed from a stored dict with Envelope.from_dict().
    """

    VERSION: int = -1

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data = data

    # -------------------------------------------------------------------------
    # Construction and dispatch
    # -------------------------------------------------------------------------

    @staticmethod
    def version_class(version: Any) -> type[Envelope]:
        """
        Return the envelope class for a version tag.

        Raises:
            UnacceptableFormat: If the tag is not an integer
            UnsupportedFormat: If no such version exists
        """
        if isinstance(version, bool) or not isinstance(version, int):
            raise UnacceptableFormat(f"Invalid envelope version: {version!r}")
        try:
            return ENVELOPE_VERSIONS[version]
        except KeyError:
            raise UnsupportedFormat(f"Unsupported envelope version: {version}") from None

    @classmethod
    def create(cls, version: int) -> Envelope:
        """Create an empty envelope of the given version."""
        return cls.version_class(version)()

    @classmethod
    def from_dict(cls, value: Any) -> Envelope:
        """
        Parse a stored envelope, dispatching on its version tag.

        Raises:
            UnacceptableFormat: If the value is not a well-formed envelope
            UnsupportedFormat: If the version tag is unknown
        """
        value = _require_mapping(value, "Envelope")
        if VERSION_FIELD not in value:
            raise UnacceptableFormat("Envelope has no version tag")
        envelope_cls = cls.version_class(value[VERSION_FIELD])
        data = copy.deepcopy(dict(value))
        envelope_cls.validate(data)
        return envelope_cls(data)

    @staticmethod
    def exists(value: Any) -> bool:
        """Return True if value looks like an envelope of a known version."""
        if not isinstance(value, Mapping) or VERSION_FIELD not in value:
            return False
        try:
            Envelope.from_dict(value)
        except (UnacceptableFormat, UnsupportedFormat):
            return False
        return True

    @classmethod
    def assert_requirements(cls) -> None:
        """Check that this version can be used with the crypto backend."""

    @classmethod
    def validate(cls, data: Mapping[str, Any]) -> None:
        """Check that data has exactly this version's shape."""
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON-compatible wire representation."""
        return copy.deepcopy(self._body())

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self.VERSION

    def recipients(self) -> frozenset[str]:
        """Fingerprints of every key this envelope was encrypted for."""
        return frozenset(self._recipient_map().keys())

    def encrypt(self, value: Any, keys: Iterable[KeyMaterial]) -> Envelope:
        """
        Encrypt value for keys, replacing any previous content.

        Args:
            value: JSON-compatible value
            keys: Recipient public keys (deduplicated by fingerprint)

        Returns:
            self

        Raises:
            ArgumentError: If there are no recipients or value is not JSON
            EncryptionFailure: If encryption fails
        """
        recipients = RecipientKeySet(keys)
        if not recipients:
            raise ArgumentError("At least one recipient key is required")
        self.assert_requirements()
        self._data = self._encrypt(json_encode(value), recipients)
        return self

    def decrypt(self, key: Any) -> Any:
        """
        Decrypt with a private key.

        Raises:
            UnacceptableFormat: If the key is not a recipient
            DecryptionFailure: If decryption fails
            MessageAuthenticationFailure: If the integrity check fails
        """
        private_key = load_private_key(key)
        wrapped = self._recipient_map().get(private_key.fingerprint)
        if wrapped is None:
            raise UnacceptableFormat(
                "Attribute data cannot be decrypted by the provided key"
            )
        return json_decode(self._decrypt(private_key, _b64decode(wrapped, "recipient")))

    def can_decrypt(self, keys: Iterable[KeyMaterial]) -> bool:
        """Return True if every given key is a recipient."""
        return RecipientKeySet(keys).fingerprints() <= self.recipients()

    def needs_update(self, keys: Iterable[KeyMaterial]) -> bool:
        """Return True if the recipients differ from keys (as fingerprint sets)."""
        return RecipientKeySet(keys).fingerprints() != self.recipients()

    # -------------------------------------------------------------------------
    # Version specific
    # -------------------------------------------------------------------------

    RECIPIENTS_FIELD: str = "encrypted_secret"

    def _body(self) -> Dict[str, Any]:
        if self._data is None:
            raise UnacceptableFormat("Envelope has not been encrypted")
        return self._data

    def _recipient_map(self) -> Mapping[str, str]:
        return self._body()[self.RECIPIENTS_FIELD]

    def _encrypt(self, plaintext: bytes, recipients: RecipientKeySet) -> Dict[str, Any]:
        raise NotImplementedError

    def _decrypt(self, private_key: PrivateKeyHandle, wrapped: bytes) -> bytes:
        raise NotImplementedError

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Envelope):
            return NotImplemented
        return self.VERSION == other.VERSION and self._data == other._data

    def __repr__(self) -> str:
        recipients = sorted(self.recipients()) if self._data is not None else []
        return f"{type(self).__name__}(recipients={recipients!r})"


def _wrap_secret(secret: SecureKey, recipients: RecipientKeySet) -> Dict[str, str]:
    return {
        key.fingerprint: _b64encode(RsaCipher.encrypt(key.key, secret.as_bytes()))
        for key in recipients
    }


def _unwrap_secret(private_key: PrivateKeyHandle, wrapped: bytes) -> SecureKey:
    secret = SecureKey(RsaCipher.decrypt(private_key.key, wrapped))
    if len(secret) != AES_256_KEY_SIZE:
        raise DecryptionFailure("Decryption failed")
    return secret


# =============================================================================
# Version 0: RSA only
# =============================================================================


class EnvelopeV0(Envelope):
    """
    Version 0: the serialized value is RSA encrypted once per recipient.

    No shared secret. The value must fit in a single RSA-OAEP block, so this
    version only suits small values.
    """

    VERSION = 0
    RECIPIENTS_FIELD = "encrypted_data"

    @classmethod
    def validate(cls, data: Mapping[str, Any]) -> None:
        _require_exact_keys(data, (VERSION_FIELD, "encrypted_data"), "Envelope")
        _require_recipient_map(data["encrypted_data"], "encrypted_data")

    def _encrypt(self, plaintext: bytes, recipients: RecipientKeySet) -> Dict[str, Any]:
        return {
            VERSION_FIELD: self.VERSION,
            "encrypted_data": {
                key.fingerprint: _b64encode(RsaCipher.encrypt(key.key, plaintext))
                for key in recipients
            },
        }

    def _decrypt(self, private_key: PrivateKeyHandle, wrapped: bytes) -> bytes:
        return RsaCipher.decrypt(private_key.key, wrapped)


# =============================================================================
# Version 1: RSA + AES-256-CBC + HMAC-SHA256
# =============================================================================


class EnvelopeV1(Envelope):
    """
    Version 1: hybrid encryption with a separate HMAC.

    A random data key encrypts the value with AES-256-CBC and is RSA
    encrypted for each recipient. The HMAC key is derived from the data key
    with HKDF; the HMAC covers the ciphertext, IV and the recipient map, and
    is verified before anything is decrypted.
    """

    VERSION = 1

    @classmethod
    def validate(cls, data: Mapping[str, Any]) -> None:
        _require_exact_keys(
            data, (VERSION_FIELD, "encrypted_data", "encrypted_secret", "hmac"), "Envelope"
        )
        encrypted_data = _require_mapping(data["encrypted_data"], "encrypted_data")
        _require_exact_keys(encrypted_data, ("cipher", "iv", "data"), "encrypted_data")
        if encrypted_data["cipher"] != CBC_ALGORITHM:
            raise UnacceptableFormat("encrypted_data.cipher is not supported")
        _require_b64(encrypted_data, "iv", "encrypted_data", CBC_IV_SIZE)
        _require_b64(encrypted_data, "data", "encrypted_data")
        _require_recipient_map(data["encrypted_secret"], "encrypted_secret")
        hmac_data = _require_mapping(data["hmac"], "hmac")
        _require_exact_keys(hmac_data, ("cipher", "data"), "hmac")
        if hmac_data["cipher"] != HMAC_ALGORITHM:
            raise UnacceptableFormat("hmac.cipher is not supported")
        _require_b64(hmac_data, "data", "hmac", HMAC_SIZE)

    @classmethod
    def _signed_data(cls, encrypted_data: Mapping[str, Any], secrets: Mapping[str, str]) -> bytes:
        return _canonical_json(
            {
                VERSION_FIELD: cls.VERSION,
                "encrypted_data": encrypted_data,
                "encrypted_secret": secrets,
            }
        )

    def _encrypt(self, plaintext: bytes, recipients: RecipientKeySet) -> Dict[str, Any]:
        secret = SecureKey.generate()
        encrypted = AesCbcCipher.encrypt(secret, plaintext)
        encrypted_data = {
            "cipher": CBC_ALGORITHM,
            "iv": _b64encode(encrypted.nonce),
            "data": _b64encode(encrypted.ciphertext),
        }
        secrets = _wrap_secret(secret, recipients)
        signature = HmacSha256.sign(
            derive_key(secret, HMAC_KEY_INFO),
            self._signed_data(encrypted_data, secrets),
        )
        return {
            VERSION_FIELD: self.VERSION,
            "encrypted_data": encrypted_data,
            "encrypted_secret": secrets,
            "hmac": {"cipher": HMAC_ALGORITHM, "data": _b64encode(signature)},
        }

    def _decrypt(self, private_key: PrivateKeyHandle, wrapped: bytes) -> bytes:
        body = self._body()
        secret = _unwrap_secret(private_key, wrapped)
        encrypted_data = body["encrypted_data"]
        HmacSha256.verify(
            derive_key(secret, HMAC_KEY_INFO),
            self._signed_data(encrypted_data, body["encrypted_secret"]),
            _b64decode(body["hmac"]["data"], "hmac.data"),
        )
        encrypted = EncryptedData(
            nonce=_b64decode(encrypted_data["iv"], "encrypted_data.iv"),
            ciphertext=_b64decode(encrypted_data["data"], "encrypted_data.data"),
        )
        return AesCbcCipher.decrypt(secret, encrypted)


# =============================================================================
# Version 2: RSA + AES-256-GCM
# =============================================================================


class EnvelopeV2(Envelope):
    """
    Version 2: hybrid encryption with AES-256-GCM.

    The version, cipher and full recipient map are passed as associated
    data, so any change to the recipient list fails the tag check.
    """

    VERSION = 2

    @classmethod
    def assert_requirements(cls) -> None:
        assert_aead_requirements_met(AEAD_ALGORITHM)

    @classmethod
    def validate(cls, data: Mapping[str, Any]) -> None:
        _require_exact_keys(
            data, (VERSION_FIELD, "encrypted_data", "encrypted_secret"), "Envelope"
        )
        encrypted_data = _require_mapping(data["encrypted_data"], "encrypted_data")
        _require_exact_keys(
            encrypted_data, ("cipher", "iv", "data", "auth_tag"), "encrypted_data"
        )
        if encrypted_data["cipher"] != AEAD_ALGORITHM:
            raise UnacceptableFormat("encrypted_data.cipher is not supported")
        _require_b64(encrypted_data, "iv", "encrypted_data", NONCE_SIZE)
        _require_b64(encrypted_data, "data", "encrypted_data")
        _require_b64(encrypted_data, "auth_tag", "encrypted_data", TAG_SIZE)
        _require_recipient_map(data["encrypted_secret"], "encrypted_secret")

    @classmethod
    def _associated_data(cls, secrets: Mapping[str, str]) -> bytes:
        return _canonical_json(
            {
                VERSION_FIELD: cls.VERSION,
                "cipher": AEAD_ALGORITHM,
                "encrypted_secret": secrets,
            }
        )

    def _encrypt(self, plaintext: bytes, recipients: RecipientKeySet) -> Dict[str, Any]:
        secret = SecureKey.generate()
        secrets = _wrap_secret(secret, recipients)
        encrypted = AesGcmCipher.encrypt(secret, plaintext, self._associated_data(secrets))
        data, tag = encrypted.split_tag()
        return {
            VERSION_FIELD: self.VERSION,
            "encrypted_data": {
                "cipher": AEAD_ALGORITHM,
                "iv": _b64encode(encrypted.nonce),
                "data": _b64encode(data),
                "auth_tag": _b64encode(tag),
            },
            "encrypted_secret": secrets,
        }

    def _decrypt(self, private_key: PrivateKeyHandle, wrapped: bytes) -> bytes:
        body = self._body()
        secret = _unwrap_secret(private_key, wrapped)
        encrypted_data = body["encrypted_data"]
        encrypted = EncryptedData.from_parts(
            nonce=_b64decode(encrypted_data["iv"], "encrypted_data.iv"),
            data=_b64decode(encrypted_data["data"], "encrypted_data.data"),
            tag=_b64decode(encrypted_data["auth_tag"], "encrypted_data.auth_tag"),
        )
        return AesGcmCipher.decrypt(
            secret, encrypted, self._associated_data(body["encrypted_secret"])
        )


ENVELOPE_VERSIONS: Dict[int, type[Envelope]] = {
    EnvelopeV0.VERSION: EnvelopeV0,
    EnvelopeV1.VERSION: EnvelopeV1,
    EnvelopeV2.VERSION: EnvelopeV2,
}

LATEST_VERSION: int = max(ENVELOPE_VERSIONS)
