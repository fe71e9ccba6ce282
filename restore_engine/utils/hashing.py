"""
Streaming file hashing helpers.
"""

import os
import hashlib

BUFFER_SIZE = 81920


def compute_file_hash(file_path: str) -> str:
    """
    Compute the SHA-256 hex digest of a file without loading it whole.

    Args:
        file_path: Path to the file

    Returns:
        Lowercase hex digest

    Raises:
        OSError: If the file cannot be read
    """
    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for block in iter(lambda: f.read(BUFFER_SIZE), b''):
            sha256.update(block)
    return sha256.hexdigest()


def is_content_different(file_a: str, file_b: str) -> bool:
    """
    Compare two files byte-for-byte, stopping at the first difference.

    Args:
        file_a: First file path
        file_b: Second file path

    Returns:
        True if sizes or contents differ
    """
    if os.path.getsize(file_a) != os.path.getsize(file_b):
        return True

    with open(file_a, 'rb') as fa, open(file_b, 'rb') as fb:
        while True:
            block_a = fa.read(BUFFER_SIZE)
            block_b = fb.read(BUFFER_SIZE)

            if block_a != block_b:
                return True
            if not block_a:
                return False
