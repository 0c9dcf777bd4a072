"""
Encrypted attribute engine.

EncryptedAttribute is the main API: it builds the recipient key set from
the configuration and the key directory, creates envelopes of the
configured version, decrypts them with the local (or a given) private key,
and re-encrypts them when the wanted recipients change.

Example:
    directory = StaticDirectory.from_file("directory.json")
    resolver = KeyResolver(directory, RecipientCache())
    enc_attr = EncryptedAttribute(
        {"version": 2, "client_search": "admin:true"},
        resolver=resolver,
        local=LocalIdentity(key_path="client.pem"),
    )
    envelope = enc_attr.create({"password": "s3cr3t"})
    enc_attr.load(envelope)  # {"password": "s3cr3t"}
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, MutableMapping, Optional, Union

from .config import EncryptedAttributeConfig
from .directory import KeyResolver
from .envelope import Envelope
from .errors import ArgumentError, ConfigError, UnacceptableFormat
from .keys import KeyMaterial, PrivateKeyHandle, RecipientKeySet
from .local import LocalIdentity
from .storage import AttributePath, AttributeStore

logger = logging.getLogger(__name__)

CONTENT_FIELD = "content"

ConfigArg = Union[EncryptedAttributeConfig, Mapping[str, Any], None]


def _wrap(value: Any) -> dict:
    return {CONTENT_FIELD: value}


def _unwrap(decrypted: Any) -> Any:
    if not isinstance(decrypted, dict) or set(decrypted) != {CONTENT_FIELD}:
        raise UnacceptableFormat("Decrypted attribute has no content")
    return decrypted[CONTENT_FIELD]


class EncryptedAttribute:
    """
    Create, read and re-key encrypted attributes.

    Only the keys passed as parameters plus the configured keys, searches
    and users can read an attribute, so include your own key in the
    configuration if you need to read it back later.
    """

    def __init__(
        self,
        config: ConfigArg = None,
        resolver: Optional[KeyResolver] = None,
        local: Optional[LocalIdentity] = None,
    ) -> None:
        self._config = EncryptedAttributeConfig().update(config)
        self._resolver = resolver
        self._local = local

    @property
    def config(self) -> EncryptedAttributeConfig:
        return self._config

    def configure(self, config: ConfigArg) -> EncryptedAttributeConfig:
        """Merge configuration options in place."""
        return self._config.update(config)

    @property
    def resolver(self) -> Optional[KeyResolver]:
        return self._resolver

    def _require_resolver(self) -> KeyResolver:
        if self._resolver is None:
            raise ConfigError("A key directory is required for this operation")
        return self._resolver

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def local_key(self) -> PrivateKeyHandle:
        """The private key used when no explicit key is passed."""
        if self._local is None:
            if self._config.client_key is None:
                raise ConfigError("No local private key configured")
            self._local = LocalIdentity(key_path=self._config.client_key)
        return self._local.get_local_private_key()

    def target_keys(self, keys: Optional[Iterable[KeyMaterial]] = None) -> RecipientKeySet:
        """
        Every public key that should be able to read the attribute.

        Configured keys, then client search, node search and user keys, then
        the keys passed as argument, deduplicated by fingerprint.

        Raises:
            ArgumentError: If the resulting key set is empty
            ConfigError: If searches are configured without a key directory
        """
        config = self._config
        recipients = config.public_keys()

        if config.client_search or config.node_search or config.users:
            resolver = self._require_resolver()
            recipients += resolver.client_keys(
                config.client_search, config.search_max_rows, config.partial_search
            )
            recipients += resolver.node_keys(
                config.node_search, config.search_max_rows, config.partial_search
            )
            recipients += resolver.user_keys(config.users)

        if keys is not None:
            recipients += RecipientKeySet(keys)

        if not recipients:
            raise ArgumentError("No public keys can read this attribute")
        return recipients

    # -------------------------------------------------------------------------
    # Envelopes
    # -------------------------------------------------------------------------

    def _encrypt(self, value: Any, recipients: RecipientKeySet) -> dict:
        envelope = Envelope.create(self._config.version)
        return envelope.encrypt(_wrap(value), recipients).to_dict()

    def create(self, value: Any, keys: Optional[Iterable[KeyMaterial]] = None) -> dict:
        """
        Encrypt a JSON-compatible value.

        Args:
            value: Value to encrypt
            keys: Public keys allowed to read it, on top of the configured ones

        Returns:
            The envelope as a JSON-compatible dict

        Raises:
            UnsupportedFormat: If the configured version does not exist
            RequirementsFailure: If the configured version cannot be used
            ArgumentError: If there are no recipients
        """
        # Fail on unusable versions before any directory round trip.
        Envelope.version_class(self._config.version).assert_requirements()
        return self._encrypt(value, self.target_keys(keys))

    def load(self, enc_value: Any, key: Optional[Any] = None) -> Any:
        """
        Decrypt an envelope.

        Args:
            enc_value: Stored envelope
            key: Private key, the local key by default

        Raises:
            UnacceptableFormat: If the envelope is malformed or not for this key
            UnsupportedFormat: If the envelope version is unknown
            DecryptionFailure: If decryption fails
            MessageAuthenticationFailure: If the envelope has been tampered with
        """
        envelope = Envelope.from_dict(enc_value)
        return _unwrap(envelope.decrypt(key if key is not None else self.local_key()))

    def can_decrypt(self, enc_value: Any, keys: Iterable[KeyMaterial]) -> bool:
        """Return True if every given key can read the envelope."""
        return Envelope.from_dict(enc_value).can_decrypt(keys)

    def needs_update(self, enc_value: Any, keys: Optional[Iterable[KeyMaterial]] = None) -> bool:
        """Return True if the envelope's readers differ from target_keys(keys)."""
        return Envelope.from_dict(enc_value).needs_update(self.target_keys(keys))

    def reencrypted(
        self,
        enc_value: Any,
        keys: Optional[Iterable[KeyMaterial]] = None,
        key: Optional[Any] = None,
    ) -> Optional[dict]:
        """
        Return a new envelope for target_keys(keys), or None if not needed.

        The existing envelope is decrypted with key (the local key by
        default); the caller's value is never modified.
        """
        old = Envelope.from_dict(enc_value)
        recipients = self.target_keys(keys)
        if not old.needs_update(recipients):
            return None
        value = _unwrap(old.decrypt(key if key is not None else self.local_key()))
        new = self._encrypt(value, recipients)
        logger.info(
            "Re-encrypted attribute for %d keys (version %d -> %d)",
            len(recipients),
            old.version,
            new["version"],
        )
        return new

    def update(
        self,
        enc_value: MutableMapping[str, Any],
        keys: Optional[Iterable[KeyMaterial]] = None,
        key: Optional[Any] = None,
    ) -> bool:
        """
        Re-key an envelope in place if its readers have changed.

        enc_value is replaced only once the new envelope is complete; on any
        error it is left untouched.

        Returns:
            True if enc_value has been updated
        """
        if not isinstance(enc_value, MutableMapping):
            raise ArgumentError("The encrypted attribute must be a mutable mapping")
        new = self.reencrypted(enc_value, keys, key)
        if new is None:
            return False
        enc_value.clear()
        enc_value.update(new)
        return True

    @staticmethod
    def exists(value: Any) -> bool:
        """Return True if value is an encrypted attribute."""
        return Envelope.exists(value)

    # -------------------------------------------------------------------------
    # Node attributes
    # -------------------------------------------------------------------------

    def _load_existing(self, store: AttributeStore, path: AttributePath) -> Any:
        enc_value = store.load_attribute(path)
        if enc_value is None:
            raise UnacceptableFormat("Encrypted attribute not found")
        return enc_value

    def exists_on_node(self, store: AttributeStore, path: AttributePath) -> bool:
        return self.exists(store.load_attribute(path))

    def load_from_node(
        self, store: AttributeStore, path: AttributePath, key: Optional[Any] = None
    ) -> Any:
        """Read and decrypt a node attribute."""
        return self.load(self._load_existing(store, path), key)

    def create_on_node(
        self, node_name: str, store: AttributeStore, path: AttributePath, value: Any
    ) -> dict:
        """
        Encrypt value for the node (plus the configured readers) and save it.

        The local key is not added: configure it if you need to read the
        attribute back.
        """
        node_key = self._require_resolver().client_key(node_name)
        enc_value = self.create(value, [node_key])
        store.save_attribute(path, enc_value)
        return enc_value

    def update_on_node(
        self,
        node_name: str,
        store: AttributeStore,
        path: AttributePath,
        key: Optional[Any] = None,
    ) -> bool:
        """
        Re-key a node attribute for the node plus the configured readers.

        Returns:
            True if the stored attribute has been rewritten
        """
        node_key = self._require_resolver().client_key(node_name)
        enc_value = self._load_existing(store, path)
        new = self.reencrypted(enc_value, [node_key], key)
        if new is None:
            return False
        store.save_attribute(path, new)
        return True

    def delete_from_node(self, store: AttributeStore, path: AttributePath) -> bool:
        """Delete a node attribute. Returns False if it did not exist."""
        return store.delete_attribute(path)
