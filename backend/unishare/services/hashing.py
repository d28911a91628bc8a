from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import BinaryIO

SMALL_FILE_THRESHOLD = 10 * 1024 * 1024
SAMPLE_SIZE = 1024 * 1024
_READ_SIZE = 1024 * 1024


def _sha256_of_range(source: BinaryIO, offset: int, length: int) -> str:
    hash_ = hashlib.sha256()
    source.seek(offset)
    remaining = length
    while remaining > 0:
        block = source.read(min(_READ_SIZE, remaining))
        if not block:
            break
        hash_.update(block)
        remaining -= len(block)
    return hash_.hexdigest()


def fingerprint(
    source: BinaryIO,
    total_size: int,
    *,
    threshold: int = SMALL_FILE_THRESHOLD,
    sample_size: int = SAMPLE_SIZE,
) -> str:
    """Content fingerprint used for deduplication.

    Small files hash their whole content. Larger files hash the size plus
    digests of three samples (head, middle, tail), so a multi-gigabyte file
    costs three reads. Collisions are possible for crafted inputs; this is a
    dedup key, not an integrity check.
    """
    if total_size < threshold:
        return _sha256_of_range(source, 0, total_size)

    middle_offset = max(0, total_size // 2 - sample_size // 2)
    tail_offset = max(0, total_size - sample_size)
    head = _sha256_of_range(source, 0, sample_size)
    middle = _sha256_of_range(source, middle_offset, sample_size)
    tail = _sha256_of_range(source, tail_offset, sample_size)

    combined = hashlib.sha256()
    combined.update(str(total_size).encode("ascii"))
    for digest in (head, middle, tail):
        combined.update(digest.encode("ascii"))
    return combined.hexdigest()


def fingerprint_path(
    path: Path,
    *,
    threshold: int = SMALL_FILE_THRESHOLD,
    sample_size: int = SAMPLE_SIZE,
) -> str:
    with open(path, "rb") as handle:
        return fingerprint(handle, path.stat().st_size, threshold=threshold, sample_size=sample_size)


async def compute_fingerprint(
    path: Path,
    *,
    threshold: int = SMALL_FILE_THRESHOLD,
    sample_size: int = SAMPLE_SIZE,
) -> str:
    return await asyncio.to_thread(fingerprint_path, path, threshold=threshold, sample_size=sample_size)
