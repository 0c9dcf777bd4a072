"""
Encrypted Attribute Benchmark CLI.

Usage:
    encrypted-attribute-benchmark [--recipients N] [--iterations N]

Or run directly:
    python -m encrypted_attributes.benchmark

Defaults can be set with ENCRYPTED_ATTRIBUTES_BENCHMARK_RECIPIENTS and
ENCRYPTED_ATTRIBUTES_BENCHMARK_ITERATIONS in the environment or a .env file.
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from typing import Callable, Dict, List, Optional

from dotenv import find_dotenv, load_dotenv

from encrypted_attributes.cache import RecipientCache
from encrypted_attributes.directory import KeyResolver, StaticDirectory
from encrypted_attributes.engine import EncryptedAttribute
from encrypted_attributes.envelope import ENVELOPE_VERSIONS
from encrypted_attributes.errors import RequirementsFailure
from encrypted_attributes.keys import PrivateKeyHandle
from encrypted_attributes.local import LocalIdentity

DEFAULT_RECIPIENTS = 10
DEFAULT_ITERATIONS = 20

SAMPLE_VALUE = {
    "user": "admin",
    "password": "Sensitive data protected by encrypted attributes",
    "port": 5432,
}


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    try:
        return int(value) if value else default
    except ValueError:
        return default


def _time(operation: Callable[[], object], iterations: int) -> float:
    """Average seconds per call."""
    start = time.perf_counter()
    for _ in range(iterations):
        operation()
    return (time.perf_counter() - start) / iterations


def _print_header(title: str) -> None:
    print("+" + "-" * 68 + "+")
    print(f"|  {title}" + " " * max(0, 66 - len(title)) + "|")
    print("+" + "-" * 68 + "+")


def _print_perf(label: str, seconds: float) -> None:
    print(f"[PERF] {label:<10} {seconds * 1000:.3f}ms ({1.0 / seconds:.2f} ops/sec)")


def run_benchmark(recipients: int, iterations: int) -> Dict[int, Dict[str, float]]:
    """Run the encrypted attribute benchmark. Returns timings per version."""
    print("=== Encrypted Attribute Benchmark ===\n")

    keygen_start = time.perf_counter()
    local_key = PrivateKeyHandle.generate()
    directory = StaticDirectory()
    directory.add_client("local", local_key.public_key, admin=True)
    for i in range(recipients):
        directory.add_node(f"node{i}", PrivateKeyHandle.generate().public_key, role=["bench"])
    extra_key = PrivateKeyHandle.generate()
    keygen_duration = time.perf_counter() - keygen_start
    print(f"[STARTUP] Generated {recipients + 2} RSA keys in {keygen_duration * 1000:.3f}ms")
    print(f"Testing with {recipients} recipients, {iterations} iterations\n")

    resolver = KeyResolver(directory, RecipientCache())
    local = LocalIdentity(key=local_key)

    print("=" * 70)
    print("                    BENCHMARK START")
    print("=" * 70 + "\n")

    results: Dict[int, Dict[str, float]] = {}
    for version in sorted(ENVELOPE_VERSIONS):
        _print_header(f"Version {version}")
        enc_attr = EncryptedAttribute(
            {"version": version, "client_search": "admin:true", "node_search": "role:bench"},
            resolver=resolver,
            local=local,
        )
        try:
            enc_value = enc_attr.create(SAMPLE_VALUE)
        except RequirementsFailure as e:
            print(f"[SKIP] {e}\n")
            continue

        create_time = _time(lambda: enc_attr.create(SAMPLE_VALUE), iterations)
        load_time = _time(lambda: enc_attr.load(enc_value), iterations)
        check_time = _time(lambda: enc_attr.needs_update(enc_value), iterations)
        update_time = _time(lambda: enc_attr.update(dict(enc_value), [extra_key.public_key]), iterations)

        print("[OK] Attribute encrypted/decrypted successfully")
        _print_perf("Create:", create_time)
        _print_perf("Load:", load_time)
        _print_perf("Check:", check_time)
        _print_perf("Update:", update_time)
        print()
        results[version] = {
            "create": create_time,
            "load": load_time,
            "check": check_time,
            "update": update_time,
        }

    print("=" * 70)
    print("                    BENCHMARK SUMMARY")
    print("=" * 70 + "\n")

    print("Cache Statistics:")
    for category, stats in resolver.cache.stats().items():
        print(f"  - {category}: {stats['hits']} hits, {stats['misses']} misses")

    print("\n+- Performance Summary (ops/sec) ------------------------------------+")
    print("|                                                                    |")
    for version, timings in results.items():
        line = "  ".join(f"{name} {1.0 / seconds:.2f}" for name, seconds in timings.items())
        text = f"|  v{version}: {line}"
        print(text + " " * max(0, 69 - len(text)) + "|")
    print("|                                                                    |")
    print("+--------------------------------------------------------------------+")

    print("\nTest Configuration:")
    print(f"  - Recipients: {recipients} nodes + 1 client")
    print("  - RSA: 2048 bits, OAEP SHA-256")
    print("  - v0: RSA only, v1: AES-256-CBC + HMAC-SHA256, v2: AES-256-GCM")

    print("\n" + "=" * 70)
    print("                    BENCHMARK COMPLETE")
    print("=" * 70 + "\n")
    return results


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point for encrypted-attribute-benchmark command."""
    load_dotenv(find_dotenv(usecwd=True))
    parser = argparse.ArgumentParser(prog="encrypted-attribute-benchmark")
    parser.add_argument(
        "--recipients",
        type=int,
        default=_env_int("ENCRYPTED_ATTRIBUTES_BENCHMARK_RECIPIENTS", DEFAULT_RECIPIENTS),
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=_env_int("ENCRYPTED_ATTRIBUTES_BENCHMARK_ITERATIONS", DEFAULT_ITERATIONS),
    )
    args = parser.parse_args(argv)
    if args.recipients < 0 or args.iterations <= 0:
        print("ERROR: recipients must be >= 0 and iterations > 0")
        sys.exit(1)
    run_benchmark(args.recipients, args.iterations)


if __name__ == "__main__":
    main()
