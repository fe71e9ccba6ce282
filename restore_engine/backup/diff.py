"""
Block-aligned binary diff between two versions of a payload.

The new file is walked in fixed 4096-byte chunks and each chunk is matched
against the chunk boundaries of the original. Matching is a three-step
check: a cheap weak hash over the leading 64 bytes of the chunk, then
SHA-256 of the whole chunk, then a byte comparison. Content that shifts
alignment degrades to Data instructions.

Diff encoding (little-endian), one instruction after another:
    Copy: opcode 0, int64 source offset, int32 length
    Data: opcode 1, int32 length, raw bytes
An empty diff means the two payloads are identical.
"""

import io
import os
import struct
import hashlib
import shutil
from collections import namedtuple
from typing import Dict, List, Tuple, Optional, Callable, Union, BinaryIO

from restore_engine.utils.cancellation import check_cancelled
from restore_engine.utils.hashing import is_content_different

CHUNK_SIZE = 4096
WINDOW_SIZE = 64

OP_COPY = 0
OP_DATA = 1

_COPY_ARGS = struct.Struct('<qi')
_DATA_ARGS = struct.Struct('<i')
_COPY_BUFFER = 81920

DiffInstruction = namedtuple('DiffInstruction', ['op', 'offset', 'length', 'data'])


class DiffError(Exception):
    """Raised when a diff cannot be created or applied."""
    pass


def weak_hash(window: bytes) -> int:
    """
    Fixed-window additive polynomial hash (h * 33 + b, 32-bit).

    Recomputed per block; this is not an incrementally updated rolling hash.
    """
    h = 0
    for b in window:
        h = ((h << 5) + h + b) & 0xFFFFFFFF
    return h


def _build_block_index(stream: BinaryIO) -> Dict[int, List[Tuple[int, bytes]]]:
    """
    Index the original by weak hash of each chunk's leading window.

    Returns:
        Dict mapping weak hash -> list of (block position, SHA-256 digest)
    """
    index = {}
    position = 0

    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break

        if len(chunk) >= WINDOW_SIZE:
            key = weak_hash(chunk[:WINDOW_SIZE])
            index.setdefault(key, []).append((position, hashlib.sha256(chunk).digest()))

        position += len(chunk)

    return index


def _find_match(chunk: bytes, index: Dict[int, List[Tuple[int, bytes]]], original: BinaryIO) -> Optional[int]:
    """Return the original position of a verified identical block, if any."""
    candidates = index.get(weak_hash(chunk[:WINDOW_SIZE]))
    if not candidates:
        return None

    strong = hashlib.sha256(chunk).digest()
    for position, candidate_strong in candidates:
        if candidate_strong != strong:
            continue

        # Final byte comparison guards against hash collisions
        original.seek(position)
        if original.read(len(chunk)) == chunk:
            return position

    return None


def _write_diff(
    original_path: str,
    new_path: str,
    out: BinaryIO,
    cancellation_check: Optional[Callable[[], None]] = None
) -> Dict[str, int]:
    """Write diff instructions for new_path against original_path into out."""
    stats = {'copy': 0, 'data': 0, 'data_bytes': 0}

    if not is_content_different(original_path, new_path):
        return stats

    with open(original_path, 'rb') as original, open(new_path, 'rb') as new:
        index = _build_block_index(original)

        while True:
            check_cancelled(cancellation_check)

            chunk = new.read(CHUNK_SIZE)
            if not chunk:
                break

            # Only whole chunks are matched; a short tail is always Data
            match = None
            if len(chunk) == CHUNK_SIZE:
                match = _find_match(chunk, index, original)

            if match is not None:
                out.write(bytes([OP_COPY]))
                out.write(_COPY_ARGS.pack(match, CHUNK_SIZE))
                stats['copy'] += 1
            else:
                out.write(bytes([OP_DATA]))
                out.write(_DATA_ARGS.pack(len(chunk)))
                out.write(chunk)
                stats['data'] += 1
                stats['data_bytes'] += len(chunk)

        # New file is empty: an empty diff would read as "identical"
        if stats['copy'] == 0 and stats['data'] == 0:
            out.write(bytes([OP_DATA]))
            out.write(_DATA_ARGS.pack(0))
            stats['data'] += 1

    return stats


def create_diff(original_path: str, new_path: str) -> bytes:
    """
    Compute the diff that turns original_path into new_path.

    Args:
        original_path: Base version of the payload
        new_path: New version of the payload

    Returns:
        Encoded diff bytes (empty if the files are identical)
    """
    buffer = io.BytesIO()
    _write_diff(original_path, new_path, buffer)
    return buffer.getvalue()


def create_diff_file(
    original_path: str,
    new_path: str,
    diff_path: str,
    cancellation_check: Optional[Callable[[], None]] = None
) -> Dict[str, int]:
    """
    Stream the diff of new_path against original_path into diff_path.

    The diff is written to a temporary file and renamed into place only
    when complete.

    Returns:
        Instruction counts: {'copy': int, 'data': int, 'data_bytes': int}

    Raises:
        DiffError: If either input cannot be read or the diff written
    """
    temp_path = diff_path + '.partial'
    try:
        with open(temp_path, 'wb') as out:
            stats = _write_diff(original_path, new_path, out, cancellation_check)
        os.replace(temp_path, diff_path)
        return stats
    except OSError as e:
        raise DiffError(f"Failed to create diff: {e}")
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise DiffError("Diff is truncated or corrupted")
    return data


def read_instructions(diff: Union[bytes, BinaryIO], include_data: bool = True):
    """
    Iterate over the instructions of an encoded diff.

    Args:
        diff: Diff bytes or a readable binary stream
        include_data: If False, Data payloads are skipped instead of read

    Yields:
        DiffInstruction tuples

    Raises:
        DiffError: On unknown opcodes or truncated instructions
    """
    stream = io.BytesIO(diff) if isinstance(diff, (bytes, bytearray)) else diff

    while True:
        opcode = stream.read(1)
        if not opcode:
            return

        if opcode[0] == OP_COPY:
            offset, length = _COPY_ARGS.unpack(_read_exact(stream, _COPY_ARGS.size))
            if offset < 0 or length < 0:
                raise DiffError("Diff contains a negative copy range")
            yield DiffInstruction(OP_COPY, offset, length, None)
        elif opcode[0] == OP_DATA:
            (length,) = _DATA_ARGS.unpack(_read_exact(stream, _DATA_ARGS.size))
            if length < 0:
                raise DiffError("Diff contains a negative data length")
            if include_data:
                yield DiffInstruction(OP_DATA, None, length, _read_exact(stream, length))
            else:
                stream.seek(length, io.SEEK_CUR)
                yield DiffInstruction(OP_DATA, None, length, None)
        else:
            raise DiffError(f"Unknown diff opcode: {opcode[0]}")


def _copy_range(source: BinaryIO, destination: BinaryIO, length: int):
    remaining = length
    while remaining > 0:
        block = source.read(min(_COPY_BUFFER, remaining))
        if not block:
            raise DiffError("Copy instruction reaches past the end of the original")
        destination.write(block)
        remaining -= len(block)


def apply_diff(
    original_path: str,
    diff: Union[bytes, str],
    output_path: str,
    cancellation_check: Optional[Callable[[], None]] = None
):
    """
    Rebuild the new payload from the original and a diff.

    Args:
        original_path: Base version the diff was computed against
        diff: Diff bytes, or path to a diff file
        output_path: Where the rebuilt payload is written
        cancellation_check: Optional callable invoked between instructions

    Raises:
        DiffError: If the diff is corrupt or does not fit the original
    """
    temp_path = output_path + '.partial'

    try:
        if isinstance(diff, (bytes, bytearray)):
            diff_stream = io.BytesIO(diff)
        else:
            diff_stream = open(diff, 'rb')

        with diff_stream, open(original_path, 'rb') as original:
            # Peek for the empty (identical) diff
            if not diff_stream.read(1):
                shutil.copyfile(original_path, temp_path)
            else:
                diff_stream.seek(0)
                with open(temp_path, 'wb') as out:
                    for instruction in read_instructions(diff_stream):
                        check_cancelled(cancellation_check)

                        if instruction.op == OP_COPY:
                            original.seek(instruction.offset)
                            _copy_range(original, out, instruction.length)
                        else:
                            out.write(instruction.data)

        os.replace(temp_path, output_path)
    except OSError as e:
        raise DiffError(f"Failed to apply diff: {e}")
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def summarize_diff(diff: Union[bytes, str]) -> Dict[str, int]:
    """
    Count the instructions in a diff.

    Returns:
        {'copy': int, 'data': int, 'data_bytes': int}
    """
    summary = {'copy': 0, 'data': 0, 'data_bytes': 0}

    stream = io.BytesIO(diff) if isinstance(diff, (bytes, bytearray)) else open(diff, 'rb')
    with stream:
        for instruction in read_instructions(stream, include_data=False):
            if instruction.op == OP_COPY:
                summary['copy'] += 1
            else:
                summary['data'] += 1
                summary['data_bytes'] += instruction.length

    return summary
