"""
Encrypted attribute configuration.

Options:
- version: envelope version used for new attributes (0, 1 or 2)
- partial_search: passed through to directory searches
- client_search: client search query (or list of queries) whose keys can read
- node_search: node search query (or list of queries) whose keys can read
- users: user names whose keys can read, or "*" for every user
- keys: additional public keys that can read
- search_max_rows: maximum rows returned by each search
- client_key: path of the local private key used to decrypt

Every assignment is validated; invalid values raise ConfigError.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError, InvalidKey
from .keys import KeyMaterial, RecipientKeySet

DEFAULT_VERSION = 1
DEFAULT_SEARCH_MAX_ROWS = 1000
ENV_PREFIX = "ENCRYPTED_ATTRIBUTES_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _version(value: Any) -> int:
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"version must be an integer, got {value!r}")
    return value


def _bool(name: str) -> Callable[[Any], bool]:
    def validate(value: Any) -> bool:
        if not isinstance(value, bool):
            raise ConfigError(f"{name} must be a boolean, got {value!r}")
        return value

    return validate


def _search(name: str) -> Callable[[Any], List[str]]:
    def validate(value: Any) -> List[str]:
        if isinstance(value, str):
            return [value] if value.strip() else []
        if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
            return list(value)
        raise ConfigError(f"{name} must be a string or a list of strings, got {value!r}")

    return validate


def _users(value: Any) -> Union[str, List[str]]:
    if value == "*":
        return value
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigError(f'users must be "*" or a list of strings, got {value!r}')


def _keys(value: Any) -> List[KeyMaterial]:
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"keys must be a list, got {type(value).__name__}")
    try:
        RecipientKeySet(value)
    except InvalidKey as e:
        raise ConfigError(f"keys contains an invalid public key: {e}")
    return list(value)


def _max_rows(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"search_max_rows must be a positive integer, got {value!r}")
    return value


def _client_key(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, Path):
        return str(value)
    raise ConfigError(f"client_key must be a path, got {value!r}")


_VALIDATORS: Dict[str, Callable[[Any], Any]] = {
    "version": _version,
    "partial_search": _bool("partial_search"),
    "client_search": _search("client_search"),
    "node_search": _search("node_search"),
    "users": _users,
    "keys": _keys,
    "search_max_rows": _max_rows,
    "client_key": _client_key,
}


@dataclass
class EncryptedAttributeConfig:
    """Options controlling who can read newly written attributes."""

    version: int = DEFAULT_VERSION
    partial_search: bool = True
    client_search: List[str] = field(default_factory=list)
    node_search: List[str] = field(default_factory=list)
    users: Union[str, List[str]] = field(default_factory=list)
    keys: List[KeyMaterial] = field(default_factory=list)
    search_max_rows: int = DEFAULT_SEARCH_MAX_ROWS
    client_key: Optional[str] = None

    def __setattr__(self, name: str, value: Any) -> None:
        validator = _VALIDATORS.get(name)
        if validator is not None:
            value = validator(value)
        object.__setattr__(self, name, value)

    def update(
        self, other: Union[EncryptedAttributeConfig, Mapping[str, Any], None]
    ) -> EncryptedAttributeConfig:
        """
        Merge options in place.

        A config replaces every option; a mapping replaces only its keys.

        Raises:
            ConfigError: On unknown option names or invalid values
        """
        if other is None:
            return self
        if isinstance(other, EncryptedAttributeConfig):
            values = {f.name: getattr(other, f.name) for f in dataclasses.fields(other)}
        elif isinstance(other, Mapping):
            values = dict(other)
        else:
            raise ConfigError(f"Cannot merge configuration from {type(other).__name__}")

        unknown = set(values) - set(_VALIDATORS)
        if unknown:
            raise ConfigError(f"Unknown configuration options: {', '.join(sorted(unknown))}")
        for name, value in values.items():
            setattr(self, name, value)
        return self

    def merged(
        self, other: Union[EncryptedAttributeConfig, Mapping[str, Any], None]
    ) -> EncryptedAttributeConfig:
        """Return a copy with other merged in."""
        return dataclasses.replace(self).update(other)

    def public_keys(self) -> RecipientKeySet:
        """Configured static keys, parsed and deduplicated."""
        return RecipientKeySet(self.keys)

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> EncryptedAttributeConfig:
        """
        Build a config from environment variables (and a .env file).

        Variables: <prefix>VERSION, PARTIAL_SEARCH, CLIENT_SEARCH, NODE_SEARCH,
        USERS, KEYS, SEARCH_MAX_ROWS, CLIENT_KEY. List values are comma
        separated; KEYS lists PEM file paths.
        """
        load_dotenv(find_dotenv(usecwd=True))
        values: Dict[str, Any] = {}

        def env(name: str) -> Optional[str]:
            value = os.environ.get(prefix + name)
            return value.strip() if value is not None and value.strip() else None

        def split(value: str) -> List[str]:
            return [item.strip() for item in value.split(",") if item.strip()]

        if env("VERSION") is not None:
            values["version"] = env("VERSION")
        partial = env("PARTIAL_SEARCH")
        if partial is not None:
            if partial.lower() not in _TRUE | _FALSE:
                raise ConfigError(f"{prefix}PARTIAL_SEARCH must be a boolean, got {partial!r}")
            values["partial_search"] = partial.lower() in _TRUE
        for name in ("CLIENT_SEARCH", "NODE_SEARCH"):
            if env(name) is not None:
                values[name.lower()] = split(env(name))
        users = env("USERS")
        if users is not None:
            values["users"] = "*" if users == "*" else split(users)
        keys = env("KEYS")
        if keys is not None:
            values["keys"] = [_read_key_file(path) for path in split(keys)]
        max_rows = env("SEARCH_MAX_ROWS")
        if max_rows is not None:
            try:
                values["search_max_rows"] = int(max_rows)
            except ValueError:
                raise ConfigError(f"{prefix}SEARCH_MAX_ROWS must be an integer, got {max_rows!r}")
        if env("CLIENT_KEY") is not None:
            values["client_key"] = env("CLIENT_KEY")

        return cls().update(values)


def _read_key_file(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read key file {path}: {e}")
