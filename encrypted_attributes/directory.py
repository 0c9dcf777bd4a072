"""
Public key directory abstractions.

This module provides:
- KeyDirectory: Abstract interface for resolving identities to public keys
- StaticDirectory: Thread-safe in-process directory (dict or JSON file)
- KeyResolver: Directory lookups memoized through a RecipientCache

Directory layout used by StaticDirectory:

    {
        "clients": {"admin1": {"public_key": "<PEM>", "admin": true}},
        "nodes": {"web1": {"public_key": "<PEM>", "role": ["webapp"]}},
        "users": {"alice": {"public_key": "<PEM>"}}
    }

Search queries are "field:value" strings. "*:*" matches everything, a
value of "*" matches any entry that has the field, and "name" matches the
entry name. A list of queries matches entries satisfying any of them.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .cache import CLIENTS, NODES, USERS, RecipientCache
from .errors import (
    ArgumentError,
    ClientNotFound,
    ConfigError,
    InsufficientPrivileges,
    SearchFailure,
)
from .keys import KeyMaterial, PublicKeyHandle, RecipientKeySet, load_public_key

logger = logging.getLogger(__name__)

SEARCH_CATEGORIES = (CLIENTS, NODES)
DEFAULT_SEARCH_MAX_ROWS = 1000

Query = Union[str, Sequence[str]]
UserList = Union[str, Sequence[str]]


def normalize_queries(query: Optional[Query]) -> Tuple[str, ...]:
    """
    Turn a query or list of queries into a tuple.

    Raises:
        ArgumentError: If the query is neither a string nor a list of strings
    """
    if query is None:
        return ()
    if isinstance(query, str):
        return (query,) if query.strip() else ()
    if isinstance(query, (list, tuple)) and all(isinstance(q, str) for q in query):
        return tuple(q for q in query if q.strip())
    raise ArgumentError(f"Invalid search query: {query!r}")


def normalize_users(users: Optional[UserList]) -> Union[str, Tuple[str, ...]]:
    """
    Validate a user list: "*" for every user, or a list of user names.

    Raises:
        ArgumentError: If the user list has the wrong format
    """
    if users is None:
        return ()
    if users == "*":
        return "*"
    if isinstance(users, (list, tuple)) and all(isinstance(u, str) for u in users):
        return tuple(users)
    raise ArgumentError(f"Invalid user list: {users!r}")


class KeyDirectory(ABC):
    """
    Abstract interface for the directory that knows everyone's public keys.

    Implementations propagate their own failures; callers do not retry.
    """

    @abstractmethod
    def search_public_keys(
        self,
        category: str,
        query: Query,
        max_rows: int = DEFAULT_SEARCH_MAX_ROWS,
        partial: bool = True,
    ) -> List[PublicKeyHandle]:
        """Public keys of every client or node matching the query."""
        ...

    @abstractmethod
    def get_public_key(self, identity: str) -> PublicKeyHandle:
        """
        Public key of a single client.

        Raises:
            ClientNotFound: If the client does not exist
            InsufficientPrivileges: If its key cannot be read
        """
        ...

    @abstractmethod
    def get_public_keys(self, users: UserList) -> List[PublicKeyHandle]:
        """Public keys of the listed users ("*" for all)."""
        ...


def _matches_value(field_value: Any, expected: str) -> bool:
    if isinstance(field_value, (list, tuple)):
        return any(_matches_value(v, expected) for v in field_value)
    if isinstance(field_value, bool):
        return expected.lower() == ("true" if field_value else "false")
    return str(field_value) == expected


def _parse_query(query: str) -> Tuple[str, str]:
    field, sep, value = query.partition(":")
    field, value = field.strip(), value.strip()
    if not sep or not field or not value:
        raise SearchFailure(f"Invalid search query: {query!r}")
    return field, value


def _matches(name: str, entry: Dict[str, Any], query: str) -> bool:
    field, value = _parse_query(query)
    if field == "*":
        return value == "*"
    if field == "name":
        return value == "*" or name == value
    if field not in entry:
        return False
    return value == "*" or _matches_value(entry[field], value)


class StaticDirectory(KeyDirectory):
    """
    In-process key directory.

    Useful for tests, the command line tools and deployments where the
    recipient list is managed by hand. The "partial" search flag is
    accepted and ignored: only public keys are ever returned.
    """

    def __init__(self, data: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None) -> None:
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {
            CLIENTS: {},
            NODES: {},
            USERS: {},
        }
        self._lock = threading.RLock()
        for category, entries in (data or {}).items():
            if category not in self._data or not isinstance(entries, dict):
                raise ConfigError(f"Invalid directory section: {category!r}")
            for name, entry in entries.items():
                self._add(category, name, entry)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> StaticDirectory:
        """Load a directory from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to read directory file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Directory file {path} must contain a JSON object")
        return cls(data)

    def _add(self, category: str, name: str, entry: Dict[str, Any]) -> None:
        if not isinstance(entry, dict):
            raise ConfigError(f"Invalid {category} entry: {name!r}")
        with self._lock:
            self._data[category][name] = dict(entry)

    def add_client(self, name: str, public_key: Optional[KeyMaterial], **attributes: Any) -> None:
        self._add(CLIENTS, name, {"public_key": _pem(public_key), **attributes})

    def add_node(self, name: str, public_key: Optional[KeyMaterial], **attributes: Any) -> None:
        self._add(NODES, name, {"public_key": _pem(public_key), **attributes})

    def add_user(self, name: str, public_key: KeyMaterial, **attributes: Any) -> None:
        self._add(USERS, name, {"public_key": _pem(public_key), **attributes})

    def remove(self, category: str, name: str) -> bool:
        with self._lock:
            return self._data.get(category, {}).pop(name, None) is not None

    def search_public_keys(
        self,
        category: str,
        query: Query,
        max_rows: int = DEFAULT_SEARCH_MAX_ROWS,
        partial: bool = True,
    ) -> List[PublicKeyHandle]:
        if category not in SEARCH_CATEGORIES:
            raise ArgumentError(f"Unknown search category: {category!r}")
        if isinstance(max_rows, bool) or not isinstance(max_rows, int) or max_rows <= 0:
            raise ArgumentError(f"Invalid max_rows: {max_rows!r}")
        queries = normalize_queries(query)
        with self._lock:
            entries = list(self._data[category].items())

        keys = []
        for name, entry in entries:
            if not any(_matches(name, entry, q) for q in queries):
                continue
            if not entry.get("public_key"):
                logger.debug("Skipping %s entry without public key: %s", category, name)
                continue
            keys.append(load_public_key(entry["public_key"]))
            if len(keys) >= max_rows:
                break
        logger.debug("Search %s %r returned %d keys", category, queries, len(keys))
        return keys

    def get_public_key(self, identity: str) -> PublicKeyHandle:
        with self._lock:
            entry = self._data[CLIENTS].get(identity)
        if entry is None:
            raise ClientNotFound(f"Client not found: {identity}")
        if not entry.get("public_key"):
            raise InsufficientPrivileges(f"Cannot read the public key of client {identity}")
        return load_public_key(entry["public_key"])

    def get_public_keys(self, users: UserList) -> List[PublicKeyHandle]:
        users = normalize_users(users)
        with self._lock:
            all_users = dict(self._data[USERS])
        names = list(all_users) if users == "*" else list(users)

        keys = []
        for name in names:
            entry = all_users.get(name)
            if entry is None:
                raise ClientNotFound(f"User not found: {name}")
            if not entry.get("public_key"):
                raise InsufficientPrivileges(f"Cannot read the public key of user {name}")
            keys.append(load_public_key(entry["public_key"]))
        return keys

    def to_dict(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        with self._lock:
            return json.loads(json.dumps(self._data))


def _pem(public_key: Optional[KeyMaterial]) -> Optional[str]:
    return None if public_key is None else load_public_key(public_key).to_pem()


class KeyResolver:
    """
    Resolves recipient keys through a directory, caching results.

    Cache keys include every search parameter, so the same query with a
    different max_rows is a separate entry.
    """

    def __init__(self, directory: KeyDirectory, cache: Optional[RecipientCache] = None) -> None:
        self._directory = directory
        self._cache = cache if cache is not None else RecipientCache()

    @property
    def directory(self) -> KeyDirectory:
        return self._directory

    @property
    def cache(self) -> RecipientCache:
        return self._cache

    def _search(self, category: str, query: Optional[Query], max_rows: int, partial: bool) -> RecipientKeySet:
        queries = normalize_queries(query)
        if not queries:
            return RecipientKeySet()
        return self._cache.resolve(
            category,
            (queries, max_rows, partial),
            lambda: RecipientKeySet(
                self._directory.search_public_keys(category, list(queries), max_rows, partial)
            ),
        )

    def client_keys(
        self,
        query: Optional[Query],
        max_rows: int = DEFAULT_SEARCH_MAX_ROWS,
        partial: bool = True,
    ) -> RecipientKeySet:
        """Keys of clients matching a client search."""
        return self._search(CLIENTS, query, max_rows, partial)

    def node_keys(
        self,
        query: Optional[Query],
        max_rows: int = DEFAULT_SEARCH_MAX_ROWS,
        partial: bool = True,
    ) -> RecipientKeySet:
        """Keys of nodes matching a node search."""
        return self._search(NODES, query, max_rows, partial)

    def user_keys(self, users: Optional[UserList]) -> RecipientKeySet:
        """Keys of the listed users ("*" for all)."""
        normalized = normalize_users(users)
        if not normalized:
            return RecipientKeySet()
        return self._cache.resolve(
            USERS,
            normalized,
            lambda: RecipientKeySet(self._directory.get_public_keys(
                normalized if normalized == "*" else list(normalized)
            )),
        )

    def resolve(self, category: str, query: Any, **kwargs: Any) -> RecipientKeySet:
        """Resolve a query for any category."""
        if category == CLIENTS:
            return self.client_keys(query, **kwargs)
        if category == NODES:
            return self.node_keys(query, **kwargs)
        if category == USERS:
            return self.user_keys(query)
        raise ArgumentError(f"Unknown directory category: {category!r}")

    def client_key(self, name: str) -> PublicKeyHandle:
        """Public key of a single client. Not cached."""
        return self._directory.get_public_key(name)
