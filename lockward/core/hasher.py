"""Canonical hashing helpers for content addressing and ledger sealing."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from lockward.models.digest import Digest, HashAlgorithm


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_digest(
    data: bytes, algorithm: HashAlgorithm = HashAlgorithm.SHA256
) -> Digest:
    """Hash exact byte content with the given algorithm."""
    return Digest(
        algorithm=algorithm,
        hex=hashlib.new(algorithm.value, data).hexdigest(),
    )


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself).

    This is the seal that makes each entry tamper-evident.
    """
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
