"""Tests for the versioned envelopes."""

from __future__ import annotations

import base64
import copy
import json

import pytest

from encrypted_attributes import crypto
from encrypted_attributes.envelope import (
    ENVELOPE_VERSIONS,
    LATEST_VERSION,
    Envelope,
    EnvelopeV0,
    EnvelopeV1,
    EnvelopeV2,
)
from encrypted_attributes.errors import (
    ArgumentError,
    DecryptionFailure,
    EncryptionFailure,
    InvalidKey,
    MessageAuthenticationFailure,
    RequirementsFailure,
    UnacceptableFormat,
    UnsupportedFormat,
)

ALL_VERSIONS = sorted(ENVELOPE_VERSIONS)
AUTHENTICATED_VERSIONS = [1, 2]

VALUE = {"content": {"user": "admin", "password": "s3cr3t", "ports": [80, 443], "on": True}}


def encrypt(version, value, keys):
    return Envelope.create(version).encrypt(value, keys).to_dict()


def flip_b64(encoded: str, index: int = 0) -> str:
    data = bytearray(base64.b64decode(encoded))
    data[index] ^= 0x01
    return base64.b64encode(bytes(data)).decode()


def ciphertext_field(version):
    return "encrypted_data" if version != 0 else None


class TestRegistry:
    def test_versions(self):
        assert ENVELOPE_VERSIONS == {0: EnvelopeV0, 1: EnvelopeV1, 2: EnvelopeV2}
        assert LATEST_VERSION == 2

    def test_unknown_version(self):
        with pytest.raises(UnsupportedFormat):
            Envelope.create(3)
        with pytest.raises(UnsupportedFormat):
            Envelope.from_dict({"version": 99, "encrypted_data": {}})

    @pytest.mark.parametrize("version", ["1", 1.0, True, None])
    def test_non_integer_version(self, version):
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict({"version": version, "encrypted_data": {}})

    def test_missing_version(self, k1):
        body = encrypt(1, VALUE, [k1])
        del body["version"]
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    @pytest.mark.parametrize("value", [None, "string", ["list"], 42])
    def test_not_a_mapping(self, value):
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(value)


class TestRoundTrip:
    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_every_recipient_can_decrypt(self, version, k1, k2):
        body = encrypt(version, VALUE, [k1, k2])
        assert body["version"] == version
        # Wire format survives JSON serialization.
        envelope = Envelope.from_dict(json.loads(json.dumps(body)))
        assert isinstance(envelope, ENVELOPE_VERSIONS[version])
        assert envelope.decrypt(k1) == VALUE
        assert envelope.decrypt(k2) == VALUE

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    @pytest.mark.parametrize("value", [None, 0, "", "text", [1, "two"], {"nested": {"a": [None]}}])
    def test_json_values(self, version, value, k1):
        assert Envelope.from_dict(encrypt(version, value, [k1])).decrypt(k1) == value

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_decrypt_with_pem(self, version, k1):
        envelope = Envelope.from_dict(encrypt(version, VALUE, [k1]))
        assert envelope.decrypt(k1.to_pem()) == VALUE

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_non_member_key(self, version, k1, k2):
        envelope = Envelope.from_dict(encrypt(version, VALUE, [k1]))
        with pytest.raises(UnacceptableFormat):
            envelope.decrypt(k2)

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_public_key_cannot_decrypt(self, version, k1):
        envelope = Envelope.from_dict(encrypt(version, VALUE, [k1]))
        with pytest.raises(InvalidKey):
            envelope.decrypt(k1.public_key.to_pem())

    @pytest.mark.parametrize("version", [1, 2])
    def test_large_values(self, version, k1):
        value = {"blob": "x" * 100_000}
        assert Envelope.from_dict(encrypt(version, value, [k1])).decrypt(k1) == value

    def test_v0_value_too_large(self, k1):
        with pytest.raises(EncryptionFailure):
            encrypt(0, {"blob": "x" * 1000}, [k1])

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_fresh_randomness(self, version, k1):
        assert encrypt(version, VALUE, [k1]) != encrypt(version, VALUE, [k1])

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_duplicate_keys_encrypted_once(self, version, k1):
        envelope = Envelope.create(version).encrypt(VALUE, [k1, k1.public_key.to_pem(), k1])
        assert envelope.recipients() == {k1.fingerprint}

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_no_recipients(self, version):
        with pytest.raises(ArgumentError):
            Envelope.create(version).encrypt(VALUE, [])

    def test_not_json_serializable(self, k1):
        with pytest.raises(ArgumentError):
            Envelope.create(2).encrypt({"bad": object()}, [k1])
        with pytest.raises(ArgumentError):
            Envelope.create(2).encrypt(float("nan"), [k1])

    def test_from_dict_copies_input(self, k1):
        body = encrypt(2, VALUE, [k1])
        envelope = Envelope.from_dict(body)
        body["encrypted_data"]["data"] = "AAAA"
        assert envelope.decrypt(k1) == VALUE


class TestWireFormat:
    def test_v0_shape(self, k1):
        body = encrypt(0, VALUE, [k1])
        assert set(body) == {"version", "encrypted_data"}
        assert set(body["encrypted_data"]) == {k1.fingerprint}

    def test_v1_shape(self, k1):
        body = encrypt(1, VALUE, [k1])
        assert set(body) == {"version", "encrypted_data", "encrypted_secret", "hmac"}
        assert body["encrypted_data"]["cipher"] == "aes-256-cbc"
        assert len(base64.b64decode(body["encrypted_data"]["iv"])) == 16
        assert body["hmac"]["cipher"] == "sha256"
        assert set(body["encrypted_secret"]) == {k1.fingerprint}

    def test_v2_shape(self, k1):
        body = encrypt(2, VALUE, [k1])
        assert set(body) == {"version", "encrypted_data", "encrypted_secret"}
        data = body["encrypted_data"]
        assert set(data) == {"cipher", "iv", "data", "auth_tag"}
        assert data["cipher"] == "aes-256-gcm"
        assert len(base64.b64decode(data["iv"])) == 12
        assert len(base64.b64decode(data["auth_tag"])) == 16


class TestValidation:
    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_extra_field(self, version, k1):
        body = encrypt(version, VALUE, [k1])
        body["extra"] = 1
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    @pytest.mark.parametrize("version", [1, 2])
    def test_missing_field(self, version, k1):
        body = encrypt(version, VALUE, [k1])
        del body["encrypted_secret"]
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_empty_recipients(self, version, k1):
        body = encrypt(version, VALUE, [k1])
        field = "encrypted_data" if version == 0 else "encrypted_secret"
        body[field] = {}
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_bad_fingerprint(self, version, k1):
        body = encrypt(version, VALUE, [k1])
        field = "encrypted_data" if version == 0 else "encrypted_secret"
        body[field] = {"NOT-A-FINGERPRINT": next(iter(body[field].values()))}
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_bad_base64(self, version, k1):
        body = encrypt(version, VALUE, [k1])
        field = "encrypted_data" if version == 0 else "encrypted_secret"
        body[field][k1.fingerprint] = "not base64!"
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    def test_v1_wrong_cipher(self, k1):
        body = encrypt(1, VALUE, [k1])
        body["encrypted_data"]["cipher"] = "aes-128-cbc"
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    def test_v1_wrong_hmac_length(self, k1):
        body = encrypt(1, VALUE, [k1])
        body["hmac"]["data"] = base64.b64encode(b"short").decode()
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    def test_v2_wrong_tag_length(self, k1):
        body = encrypt(2, VALUE, [k1])
        body["encrypted_data"]["auth_tag"] = base64.b64encode(b"\x00" * 8).decode()
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    def test_v2_wrong_nonce_length(self, k1):
        body = encrypt(2, VALUE, [k1])
        body["encrypted_data"]["iv"] = base64.b64encode(b"\x00" * 16).decode()
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)

    def test_version_mismatched_body(self, k1):
        body = encrypt(2, VALUE, [k1])
        body["version"] = 1
        with pytest.raises(UnacceptableFormat):
            Envelope.from_dict(body)


class TestTampering:
    @pytest.mark.parametrize("version", AUTHENTICATED_VERSIONS)
    def test_ciphertext_bit_flip(self, version, k1):
        body = encrypt(version, VALUE, [k1])
        body["encrypted_data"]["data"] = flip_b64(body["encrypted_data"]["data"])
        with pytest.raises(MessageAuthenticationFailure):
            Envelope.from_dict(body).decrypt(k1)

    @pytest.mark.parametrize("version", AUTHENTICATED_VERSIONS)
    def test_iv_bit_flip(self, version, k1):
        body = encrypt(version, VALUE, [k1])
        body["encrypted_data"]["iv"] = flip_b64(body["encrypted_data"]["iv"])
        with pytest.raises(MessageAuthenticationFailure):
            Envelope.from_dict(body).decrypt(k1)

    @pytest.mark.parametrize("version", AUTHENTICATED_VERSIONS)
    def test_other_recipient_entry_modified(self, version, k1, k2):
        body = encrypt(version, VALUE, [k1, k2])
        secrets = body["encrypted_secret"]
        secrets[k2.fingerprint] = flip_b64(secrets[k2.fingerprint], 10)
        with pytest.raises(MessageAuthenticationFailure):
            Envelope.from_dict(body).decrypt(k1)

    @pytest.mark.parametrize("version", AUTHENTICATED_VERSIONS)
    def test_recipient_added(self, version, k1, k2):
        """A key holder cannot grant access to someone else by editing the map."""
        body = encrypt(version, VALUE, [k1])
        original = Envelope.from_dict(body)
        # Reuse k1's wrapped secret under another fingerprint.
        body["encrypted_secret"][k2.fingerprint] = body["encrypted_secret"][k1.fingerprint]
        tampered = Envelope.from_dict(body)
        assert original.decrypt(k1) == VALUE
        with pytest.raises(MessageAuthenticationFailure):
            tampered.decrypt(k1)

    @pytest.mark.parametrize("version", AUTHENTICATED_VERSIONS)
    def test_recipient_removed(self, version, k1, k2):
        body = encrypt(version, VALUE, [k1, k2])
        del body["encrypted_secret"][k2.fingerprint]
        with pytest.raises(MessageAuthenticationFailure):
            Envelope.from_dict(body).decrypt(k1)

    def test_v1_hmac_modified(self, k1):
        body = encrypt(1, VALUE, [k1])
        body["hmac"]["data"] = flip_b64(body["hmac"]["data"])
        with pytest.raises(MessageAuthenticationFailure):
            Envelope.from_dict(body).decrypt(k1)

    def test_v2_tag_modified(self, k1):
        body = encrypt(2, VALUE, [k1])
        body["encrypted_data"]["auth_tag"] = flip_b64(body["encrypted_data"]["auth_tag"])
        with pytest.raises(MessageAuthenticationFailure):
            Envelope.from_dict(body).decrypt(k1)

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_own_wrapped_key_modified(self, version, k1):
        body = encrypt(version, VALUE, [k1])
        field = "encrypted_data" if version == 0 else "encrypted_secret"
        body[field][k1.fingerprint] = flip_b64(body[field][k1.fingerprint], 3)
        with pytest.raises(DecryptionFailure):
            Envelope.from_dict(body).decrypt(k1)


class TestReconciliation:
    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_same_set(self, version, k1, k2):
        envelope = Envelope.create(version).encrypt(VALUE, [k1, k2])
        assert not envelope.needs_update([k2.public_key.to_pem(), k1])

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_superset(self, version, k1, k2):
        envelope = Envelope.create(version).encrypt(VALUE, [k1])
        assert envelope.needs_update([k1, k2])

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_subset(self, version, k1, k2):
        envelope = Envelope.create(version).encrypt(VALUE, [k1, k2])
        assert envelope.needs_update([k1])

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_can_decrypt(self, version, k1, k2, k3):
        envelope = Envelope.create(version).encrypt(VALUE, [k1, k2])
        assert envelope.can_decrypt([k1])
        assert envelope.can_decrypt([k1, k2])
        assert envelope.can_decrypt([])
        assert not envelope.can_decrypt([k1, k3])

    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_recipients(self, version, k1, k2):
        envelope = Envelope.create(version).encrypt(VALUE, [k1, k2])
        assert envelope.recipients() == {k1.fingerprint, k2.fingerprint}


class TestExists:
    @pytest.mark.parametrize("version", ALL_VERSIONS)
    def test_valid(self, version, k1):
        assert Envelope.exists(encrypt(version, VALUE, [k1]))

    def test_invalid(self, k1):
        body = encrypt(2, VALUE, [k1])
        broken = copy.deepcopy(body)
        broken["encrypted_data"]["cipher"] = "none"
        assert not Envelope.exists(None)
        assert not Envelope.exists("text")
        assert not Envelope.exists({"content": "plain"})
        assert not Envelope.exists({"version": 7, "encrypted_data": {}})
        assert not Envelope.exists(broken)


class TestRequirements:
    def test_v2_requires_aead(self, monkeypatch, k1):
        monkeypatch.setattr(crypto, "aead_supported", lambda algorithm: False)
        with pytest.raises(RequirementsFailure):
            EnvelopeV2.assert_requirements()
        with pytest.raises(RequirementsFailure):
            Envelope.create(2).encrypt(VALUE, [k1])

    def test_v1_has_no_requirements(self, monkeypatch, k1):
        monkeypatch.setattr(crypto, "aead_supported", lambda algorithm: False)
        Envelope.create(1).encrypt(VALUE, [k1])

    def test_unencrypted_envelope(self):
        with pytest.raises(UnacceptableFormat):
            Envelope.create(2).to_dict()
