"""
Pytest configuration and fixtures for encrypted attribute tests.
"""

from __future__ import annotations

import pytest

from encrypted_attributes import (
    EncryptedAttribute,
    KeyResolver,
    LocalIdentity,
    MemoryAttributeStore,
    PrivateKeyHandle,
    RecipientCache,
    StaticDirectory,
)


# RSA key generation is slow, so keys are shared by the whole session.


@pytest.fixture(scope="session")
def k1() -> PrivateKeyHandle:
    return PrivateKeyHandle.generate()


@pytest.fixture(scope="session")
def k2() -> PrivateKeyHandle:
    return PrivateKeyHandle.generate()


@pytest.fixture(scope="session")
def k3() -> PrivateKeyHandle:
    return PrivateKeyHandle.generate()


@pytest.fixture
def cache() -> RecipientCache:
    """Create a fresh recipient cache for each test."""
    return RecipientCache()


@pytest.fixture
def directory(k1, k2, k3) -> StaticDirectory:
    """
    Key directory:
    - admin1 (k1): admin client
    - web1 (k2): node and its client
    - db1 (k3): node, no client
    - alice (k3): user
    """
    directory = StaticDirectory()
    directory.add_client("admin1", k1.public_key, admin=True)
    directory.add_client("web1", k2.public_key, admin=False)
    directory.add_node("web1", k2.public_key, role=["webapp", "base"])
    directory.add_node("db1", k3.public_key, role=["db", "base"])
    directory.add_user("alice", k3.public_key)
    return directory


@pytest.fixture
def resolver(directory: StaticDirectory, cache: RecipientCache) -> KeyResolver:
    return KeyResolver(directory, cache)


@pytest.fixture
def store() -> MemoryAttributeStore:
    """Create an in-memory attribute store instance for testing."""
    return MemoryAttributeStore()


@pytest.fixture
def enc_attr(resolver: KeyResolver, k1: PrivateKeyHandle) -> EncryptedAttribute:
    """Engine readable by admin clients, decrypting as admin1."""
    return EncryptedAttribute(
        {"version": 2, "client_search": "admin:true"},
        resolver=resolver,
        local=LocalIdentity(key=k1),
    )
