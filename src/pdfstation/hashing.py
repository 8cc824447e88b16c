"""Fingerprinting helpers.

- Output hashes validate a job's result file before it is marked COMPLETED.
- Content digests identify byte-identical embedded images for deduplication.
- Partition hashes route every message of a job to the same partition.
"""

import hashlib
import os
from typing import Iterable


def compute_output_hash(file_path: str) -> str:
    """Compute SHA-256 hash of an output file.

    Raises:
        FileNotFoundError: If output file doesn't exist
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Output file not found: {file_path}")

    hasher = hashlib.sha256()

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)

    return hasher.hexdigest()


def content_digest(chunks: Iterable[bytes]) -> str:
    """SHA-256 over a sequence of byte chunks (order-sensitive)."""
    hasher = hashlib.sha256()
    for chunk in chunks:
        hasher.update(len(chunk).to_bytes(8, "big"))
        hasher.update(chunk)
    return hasher.hexdigest()


def partition_for_key(key: str, partitions: int) -> int:
    """Stable key -> partition mapping (independent of PYTHONHASHSEED)."""
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % partitions
