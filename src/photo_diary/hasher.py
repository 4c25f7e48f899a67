"""Content hashing helpers for encoded derivative blobs."""

from __future__ import annotations

from typing import Final

import xxhash

CONTENT_HASH_ALGO: Final[str] = "xxhash64-v1"


def compute_content_hash(data: bytes) -> str:
    """Compute the 64-bit content hash for an in-memory blob.

    Returns a 16-character lowercase hexadecimal string.
    """

    digest = xxhash.xxh64(data).intdigest()
    return f"{digest:016x}"


__all__ = ["CONTENT_HASH_ALGO", "compute_content_hash"]
