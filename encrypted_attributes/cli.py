"""
Encrypted attribute command line tool.

Nodes are stored as one JSON document each (<nodes-dir>/<node>.json) and
public keys are read from a JSON key directory (see StaticDirectory).

Usage:
  encrypted-attribute show NODE ATTRIBUTE
  encrypted-attribute create NODE ATTRIBUTE [--input-format plain|json] [--value VALUE]
  encrypted-attribute update NODE ATTRIBUTE
  encrypted-attribute edit NODE ATTRIBUTE [--input-format plain|json]
  encrypted-attribute delete NODE ATTRIBUTE [--force]

ATTRIBUTE is a dotted path ("mysql.server_root_password"); escape literal
dots as "\\.". Options not given on the command line are read from
ENCRYPTED_ATTRIBUTES_* environment variables (or a .env file).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shlex
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cache import RecipientCache
from .config import EncryptedAttributeConfig
from .directory import KeyResolver, StaticDirectory
from .engine import EncryptedAttribute
from .errors import (
    ArgumentError,
    ClientNotFound,
    ConfigError,
    CryptoError,
    DecryptionFailure,
    EncryptedAttributeError,
    InsufficientPrivileges,
    InvalidKey,
    MessageAuthenticationFailure,
    RequirementsFailure,
    SearchFailure,
    StorageError,
    UnacceptableFormat,
    UnsupportedFormat,
)
from .local import LocalIdentity
from .storage import JsonFileAttributeStore, parse_attribute_path

logger = logging.getLogger(__name__)

INPUT_FORMATS = ("plain", "json")
DEFAULT_EDITOR = "vi"

# Most specific first.
ERROR_MESSAGES = (
    (MessageAuthenticationFailure, "Encrypted attribute integrity check failed"),
    (DecryptionFailure, "Cannot decrypt the encrypted attribute"),
    (UnacceptableFormat, "Invalid encrypted attribute"),
    (UnsupportedFormat, "Unsupported encrypted attribute format"),
    (RequirementsFailure, "Encrypted attribute version not available"),
    (InvalidKey, "Invalid key"),
    (CryptoError, "Encryption error"),
    (ClientNotFound, "Client not found"),
    (InsufficientPrivileges, "Insufficient privileges"),
    (SearchFailure, "Search failed"),
    (ArgumentError, "Invalid argument"),
    (ConfigError, "Configuration error"),
    (StorageError, "Storage error"),
    (EncryptedAttributeError, "Error"),
)


class CommandError(Exception):
    """A command failed with a message for the user."""

    pass


def error_message(error: EncryptedAttributeError) -> str:
    for error_class, message in ERROR_MESSAGES:
        if isinstance(error, error_class):
            return f"{message}: {error}"
    return str(error)


# =============================================================================
# Editing
# =============================================================================


def format_value(value: Any, input_format: str) -> str:
    if input_format == "json":
        return json.dumps(value, indent=2, sort_keys=True) + "\n"
    return value if isinstance(value, str) else json.dumps(value)


def parse_value(text: str, input_format: str) -> Any:
    if input_format == "json":
        try:
            return json.loads(text)
        except ValueError as e:
            raise CommandError(f"Invalid JSON input: {e}")
    return text.rstrip("\n")


def run_editor(text: str) -> str:
    """Open text in $EDITOR and return the saved result."""
    editor = os.environ.get("VISUAL") or os.environ.get("EDITOR") or DEFAULT_EDITOR
    with tempfile.NamedTemporaryFile("w", suffix=".txt", delete=False, encoding="utf-8") as f:
        f.write(text)
        path = f.name
    try:
        try:
            result = subprocess.run(shlex.split(editor) + [path])
        except OSError as e:
            raise CommandError(f"Cannot run editor {editor!r}: {e}")
        if result.returncode != 0:
            raise CommandError(f"Editor exited with status {result.returncode}")
        return Path(path).read_text(encoding="utf-8")
    finally:
        os.unlink(path)


def edit_data(value: Any, input_format: str) -> Any:
    return parse_value(run_editor(format_value(value, input_format)), input_format)


# =============================================================================
# Setup
# =============================================================================


def build_config(args: argparse.Namespace) -> EncryptedAttributeConfig:
    config = EncryptedAttributeConfig.from_env()
    overrides: Dict[str, Any] = {}
    if args.encrypted_version is not None:
        overrides["version"] = args.encrypted_version
    if args.client_search:
        overrides["client_search"] = args.client_search
    if args.node_search:
        overrides["node_search"] = args.node_search
    if args.users:
        overrides["users"] = "*" if args.users == ["*"] else args.users
    if args.public_key:
        overrides["keys"] = [_read_text(path) for path in args.public_key]
    if args.key is not None:
        overrides["client_key"] = args.key
    return config.update(overrides)


def _read_text(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}")


def build_engine(args: argparse.Namespace) -> EncryptedAttribute:
    config = build_config(args)
    resolver = KeyResolver(StaticDirectory.from_file(args.directory), RecipientCache.from_env())
    local = LocalIdentity(key_path=config.client_key) if config.client_key else None
    return EncryptedAttribute(config, resolver=resolver, local=local)


def node_store(args: argparse.Namespace) -> JsonFileAttributeStore:
    if not args.node or "/" in args.node or args.node.startswith("."):
        raise ArgumentError(f"Invalid node name: {args.node!r}")
    return JsonFileAttributeStore(Path(args.nodes_dir) / f"{args.node}.json")


# =============================================================================
# Commands
# =============================================================================


def cmd_show(args: argparse.Namespace) -> int:
    enc_attr = build_engine(args)
    store = node_store(args)
    path = parse_attribute_path(args.attribute)
    if not enc_attr.exists_on_node(store, path):
        raise CommandError("Encrypted attribute not found")
    value = enc_attr.load_from_node(store, path)
    print(format_value(value, "json").rstrip("\n"))
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    enc_attr = build_engine(args)
    store = node_store(args)
    path = parse_attribute_path(args.attribute)
    if store.load_attribute(path) is not None:
        raise CommandError("Encrypted attribute already exists")
    if args.value is not None:
        value = parse_value(args.value, args.input_format)
    else:
        value = edit_data({} if args.input_format == "json" else "", args.input_format)
    enc_attr.create_on_node(args.node, store, path, value)
    print("Encrypted attribute created.")
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    enc_attr = build_engine(args)
    store = node_store(args)
    path = parse_attribute_path(args.attribute)
    if not enc_attr.exists_on_node(store, path):
        raise CommandError("Encrypted attribute not found")
    if enc_attr.update_on_node(args.node, store, path):
        print("Encrypted attribute updated.")
    else:
        print("Encrypted attribute does not need updating.")
    return 0


def cmd_edit(args: argparse.Namespace) -> int:
    enc_attr = build_engine(args)
    store = node_store(args)
    path = parse_attribute_path(args.attribute)
    if not enc_attr.exists_on_node(store, path):
        raise CommandError("Encrypted attribute not found")
    value = edit_data(enc_attr.load_from_node(store, path), args.input_format)
    enc_attr.create_on_node(args.node, store, path, value)
    print("Encrypted attribute saved.")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    enc_attr = build_engine(args)
    store = node_store(args)
    path = parse_attribute_path(args.attribute)
    if not enc_attr.exists_on_node(store, path):
        raise CommandError("Encrypted attribute not found")
    if not args.force:
        # Refuse to delete what we cannot read back.
        enc_attr.load_from_node(store, path)
    enc_attr.delete_from_node(store, path)
    print("Encrypted attribute deleted.")
    return 0


COMMANDS = {
    "show": cmd_show,
    "create": cmd_create,
    "update": cmd_update,
    "edit": cmd_edit,
    "delete": cmd_delete,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="encrypted-attribute",
        description="Manage encrypted node attributes",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--nodes-dir",
        default=os.environ.get("ENCRYPTED_ATTRIBUTES_NODES_DIR", "nodes"),
        help="Directory with one <node>.json document per node",
    )
    parser.add_argument(
        "--directory",
        default=os.environ.get("ENCRYPTED_ATTRIBUTES_DIRECTORY", "directory.json"),
        help="JSON key directory of clients, nodes and users",
    )
    parser.add_argument("-k", "--key", help="Private key (PEM) used to decrypt")
    parser.add_argument(
        "--encrypted-version", type=int, help="Envelope version for new attributes"
    )
    parser.add_argument(
        "-C", "--client-search", action="append", metavar="QUERY",
        help="Clients matching QUERY can read the attribute (repeatable)",
    )
    parser.add_argument(
        "-N", "--node-search", action="append", metavar="QUERY",
        help="Nodes matching QUERY can read the attribute (repeatable)",
    )
    parser.add_argument(
        "-U", "--users", action="append", metavar="USER",
        help='User that can read the attribute, "*" for all (repeatable)',
    )
    parser.add_argument(
        "-P", "--public-key", action="append", metavar="FILE",
        help="Public key (PEM file) that can read the attribute (repeatable)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("show", "Decrypt and print an encrypted attribute"),
        ("create", "Create an encrypted attribute"),
        ("update", "Re-encrypt an attribute if its readers changed"),
        ("edit", "Edit an encrypted attribute in $EDITOR"),
        ("delete", "Delete an encrypted attribute"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("node", help="Node name")
        sub.add_argument("attribute", help="Dotted attribute path")
        if name in ("create", "edit"):
            sub.add_argument(
                "-i", "--input-format", choices=INPUT_FORMATS, default="plain",
                help="Input (editor) format",
            )
        if name == "create":
            sub.add_argument("--value", help="Value to encrypt instead of opening an editor")
        if name == "delete":
            sub.add_argument(
                "-f", "--force", action="store_true",
                help="Delete even if the attribute cannot be decrypted",
            )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the encrypted-attribute command."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return COMMANDS[args.command](args)
    except CommandError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except EncryptedAttributeError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"ERROR: {error_message(e)}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
