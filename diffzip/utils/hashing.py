"""
Content digest and chunking helpers.
"""

import hashlib
from typing import Iterator


def compute_digest(data: bytes) -> str:
    """
    Compute the SHA-256 digest of a buffer.

    Args:
        data: Content to hash

    Returns:
        Lowercase hex digest
    """
    return hashlib.sha256(data).hexdigest()


def pieces(source: bytes, chunk_size: int) -> Iterator[bytes]:
    """
    Split a buffer into consecutive chunks of at most chunk_size bytes.

    An empty buffer yields nothing.
    """
    if chunk_size <= 0:
        raise ValueError(f"Invalid chunk size: {chunk_size}")

    view = memoryview(source)
    offset = 0
    while offset < len(view):
        yield bytes(view[offset:offset + chunk_size])
        offset += chunk_size
