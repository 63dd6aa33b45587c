"""Digest verification and canonical hashing helpers.

All digests are lower-case SHA-256 hex. ``verify`` is the single integrity
gate for fetched bytes: any mismatch is a total failure.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from pathlib import Path
from typing import Any

_CHUNK = 65536


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Return the SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(block)
    return digest.hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object as ``sha256:<hex>``."""
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def normalise_digest(digest: str) -> str:
    """Lower-case a digest and strip an optional ``sha256:`` prefix."""
    return digest.strip().lower().removeprefix("sha256:")


def digests_equal(actual: str, expected: str) -> bool:
    """Constant-time comparison of two hex digests."""
    return hmac.compare_digest(
        normalise_digest(actual).encode("ascii", "replace"),
        normalise_digest(expected).encode("ascii", "replace"),
    )


def verify(data: bytes, expected_digest: str) -> bool:
    """Return ``True`` iff ``sha256(data)`` equals ``expected_digest``."""
    return digests_equal(sha256_hex(data), expected_digest)
