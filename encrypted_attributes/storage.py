"""
Attribute storage abstractions.

This module provides:
- AttributeStore: Abstract interface for reading and writing node attributes
- MemoryAttributeStore: Thread-safe in-memory implementation
- JsonFileAttributeStore: One JSON document per node, written atomically
- validate_attribute_path / parse_attribute_path: Attribute path helpers

An attribute path is a non-empty list of string segments, e.g.
["mysql", "server_root_password"]. On the command line it is written with
dots ("mysql.server_root_password"); a literal dot is escaped as "\\.".
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .errors import ArgumentError, StorageError

AttributePath = Sequence[str]


def validate_attribute_path(path: Any) -> List[str]:
    """
    Check an attribute path and return it as a list.

    Raises:
        ArgumentError: If path is not a non-empty list of strings
    """
    if not isinstance(path, (list, tuple)) or not path:
        raise ArgumentError(f"Invalid attribute path: {path!r}")
    if not all(isinstance(segment, str) and segment for segment in path):
        raise ArgumentError(f"Invalid attribute path: {path!r}")
    return list(path)


def parse_attribute_path(text: str) -> List[str]:
    """
    Split a dotted attribute path, honoring "\\." escapes.

    Example:
        parse_attribute_path("encrypted.attri\\.bu\\te") == ["encrypted", "attri.bu\\te"]
    """
    if not isinstance(text, str) or not text:
        raise ArgumentError(f"Invalid attribute path: {text!r}")

    segments: List[str] = []
    current: List[str] = []
    chars = iter(text)
    for char in chars:
        if char == "\\":
            following = next(chars, "")
            current.append("." if following == "." else char + following)
        elif char == ".":
            segments.append("".join(current))
            current = []
        else:
            current.append(char)
    segments.append("".join(current))
    return validate_attribute_path(segments)


def _get(document: Dict[str, Any], path: List[str]) -> Any:
    node: Any = document
    for segment in path:
        if not isinstance(node, dict) or segment not in node:
            return None
        node = node[segment]
    return node


def _set(document: Dict[str, Any], path: List[str], value: Any) -> None:
    node = document
    for segment in path[:-1]:
        child = node.setdefault(segment, {})
        if not isinstance(child, dict):
            raise StorageError(f"Cannot save under non-mapping attribute {segment!r}")
        node = child
    node[path[-1]] = value


def _delete(document: Dict[str, Any], path: List[str]) -> bool:
    parent = _get(document, path[:-1]) if len(path) > 1 else document
    if not isinstance(parent, dict) or path[-1] not in parent:
        return False
    del parent[path[-1]]
    return True


class AttributeStore(ABC):
    """
    Abstract storage interface for node attributes.

    Values are JSON-compatible. Missing attributes load as None.
    """

    @abstractmethod
    def load_attribute(self, path: AttributePath) -> Optional[Any]:
        """Read an attribute, None if it does not exist."""
        ...

    @abstractmethod
    def save_attribute(self, path: AttributePath, value: Any) -> None:
        """Write an attribute, creating parent mappings as needed."""
        ...

    @abstractmethod
    def delete_attribute(self, path: AttributePath) -> bool:
        """Delete an attribute. Returns False if it did not exist."""
        ...


class MemoryAttributeStore(AttributeStore):
    """
    Thread-safe in-memory attribute store.

    Values are copied in and out so callers never share state with the store.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(data) if data else {}
        self._lock = threading.RLock()

    def load_attribute(self, path: AttributePath) -> Optional[Any]:
        path = validate_attribute_path(path)
        with self._lock:
            return copy.deepcopy(_get(self._data, path))

    def save_attribute(self, path: AttributePath, value: Any) -> None:
        path = validate_attribute_path(path)
        with self._lock:
            _set(self._data, path, copy.deepcopy(value))

    def delete_attribute(self, path: AttributePath) -> bool:
        path = validate_attribute_path(path)
        with self._lock:
            return _delete(self._data, path)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)


class JsonFileAttributeStore(AttributeStore):
    """
    Attribute store backed by a JSON file holding one node's attributes.

    Writes go to a temporary file in the same directory which then replaces
    the original, so readers never see a partially written document.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read {self._path}: {e}")
        if not isinstance(document, dict):
            raise StorageError(f"{self._path} does not contain a JSON object")
        return document

    def _write(self, document: Dict[str, Any]) -> None:
        directory = self._path.parent
        tmp_path: Optional[str] = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=directory, suffix=".tmp", delete=False
            ) as f:
                tmp_path = f.name
                json.dump(document, f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"Failed to write {self._path}: {e}")

    def load_attribute(self, path: AttributePath) -> Optional[Any]:
        path = validate_attribute_path(path)
        with self._lock:
            return _get(self._read(), path)

    def save_attribute(self, path: AttributePath, value: Any) -> None:
        path = validate_attribute_path(path)
        with self._lock:
            document = self._read()
            _set(document, path, value)
            self._write(document)

    def delete_attribute(self, path: AttributePath) -> bool:
        path = validate_attribute_path(path)
        with self._lock:
            document = self._read()
            deleted = _delete(document, path)
            if deleted:
                self._write(document)
            return deleted
