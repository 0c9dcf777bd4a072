"""
Local identity: the private key this process decrypts with.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, Union

from .errors import ConfigError, InvalidKey
from .keys import PrivateKeyHandle, load_private_key


class LocalIdentity:
    """
    Lazily loads and keeps the local private key.

    Either wraps an existing key or reads a PEM file on first use.
    """

    def __init__(
        self,
        key: Optional[PrivateKeyHandle] = None,
        key_path: Optional[Union[str, Path]] = None,
    ) -> None:
        if key is None and key_path is None:
            raise ConfigError("A private key or a private key path is required")
        self._key = key
        self._key_path = Path(key_path) if key_path is not None else None
        self._lock = threading.Lock()

    @property
    def key_path(self) -> Optional[Path]:
        return self._key_path

    def get_local_private_key(self) -> PrivateKeyHandle:
        """
        Raises:
            ConfigError: If the key file cannot be read
            InvalidKey: If it does not hold an RSA private key
        """
        with self._lock:
            if self._key is None and self._key_path is not None:
                self._key = _read_private_key(self._key_path)
            return self._key


def _read_private_key(path: Path) -> PrivateKeyHandle:
    try:
        pem = path.read_bytes()
    except OSError as e:
        raise ConfigError(f"Failed to read private key {path}: {e}")
    try:
        return load_private_key(pem)
    except InvalidKey:
        raise InvalidKey(f"{path} is not a valid RSA private key") from None
