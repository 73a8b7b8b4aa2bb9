"""Splitting files into fixed-size chunks and reassembling them by index."""

import asyncio
import math
from typing import Dict, Iterator, List, Mapping, Optional

from common.checksum import StreamingDigest
from common.constants import MERGE_GROUP_SIZE
from common.exceptions import IncompleteFileError, InvalidChunkIndexError


def total_chunks(size: int, chunk_size: int) -> int:
    """
    Number of chunks needed to carry size bytes.

    Args:
        size: File size in bytes
        chunk_size: Chunk size in bytes

    Returns:
        ceil(size / chunk_size), 0 for an empty file
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return math.ceil(size / chunk_size)


def chunk_bounds(index: int, size: int, chunk_size: int) -> tuple[int, int]:
    """Byte range [start, end) of chunk index within a file of size bytes."""
    start = index * chunk_size
    return start, min(start + chunk_size, size)


def iter_chunks(blob: bytes, chunk_size: int) -> Iterator[bytes]:
    """
    Yield ordered chunks of blob without copying the whole file.

    Args:
        blob: File contents
        chunk_size: Chunk size in bytes

    Yields:
        Chunk bytes, the last one possibly shorter
    """
    view = memoryview(blob)
    for index in range(total_chunks(len(blob), chunk_size)):
        start, end = chunk_bounds(index, len(blob), chunk_size)
        yield bytes(view[start:end])


def split(blob: bytes, chunk_size: int) -> List[bytes]:
    """Split blob into an ordered list of chunks."""
    return list(iter_chunks(blob, chunk_size))


def first_missing(chunk_map: Mapping[int, bytes], total: int) -> Optional[int]:
    """Lowest index in [0, total) absent from chunk_map, None if complete."""
    for index in range(total):
        if index not in chunk_map:
            return index
    return None


def reassemble(
    chunk_map: Mapping[int, bytes],
    total: int,
    group_size: int = MERGE_GROUP_SIZE,
    digest: Optional[StreamingDigest] = None
) -> bytes:
    """
    Join chunks keyed by index into the original blob.

    Chunks are merged in groups of group_size so large chunk counts do not
    build one huge intermediate list.

    Args:
        chunk_map: Mapping of chunk index to bytes, any insertion order
        total: Declared number of chunks
        group_size: Number of chunks joined per merge step
        digest: Optional digest updated with each chunk in index order

    Returns:
        Reassembled bytes

    Raises:
        IncompleteFileError: If any index in [0, total) is missing
    """
    missing = first_missing(chunk_map, total)
    if missing is not None:
        raise IncompleteFileError(missing, total)

    merged = bytearray()
    for group_start in range(0, total, group_size):
        group = [chunk_map[i] for i in range(group_start, min(group_start + group_size, total))]
        if digest is not None:
            for chunk in group:
                digest.update(chunk)
        merged += b"".join(group)
    return bytes(merged)


class ChunkAssembly:
    """
    Collects chunks of one file as they arrive, in any order.

    Duplicate indices are ignored so retried deliveries are harmless.
    """

    def __init__(self, file_id: str, total: int, group_size: int = MERGE_GROUP_SIZE):
        self.file_id = file_id
        self.total = total
        self.group_size = group_size
        self.chunks: Dict[int, bytes] = {}
        self.received_bytes = 0

    def add(self, index: int, data: bytes) -> bool:
        """
        Store a chunk.

        Returns:
            True if the index was new, False for a duplicate

        Raises:
            InvalidChunkIndexError: If index is outside [0, total)
        """
        if not 0 <= index < self.total:
            raise InvalidChunkIndexError(
                f"Chunk index {index} out of range for {self.total} chunks of file {self.file_id}"
            )
        if index in self.chunks:
            return False
        self.chunks[index] = data
        self.received_bytes += len(data)
        return True

    @property
    def is_complete(self) -> bool:
        return len(self.chunks) == self.total

    @property
    def progress(self) -> int:
        if self.total == 0:
            return 100
        return math.floor(len(self.chunks) / self.total * 100)

    def missing(self) -> List[int]:
        return [i for i in range(self.total) if i not in self.chunks]

    async def assemble(self, digest: Optional[StreamingDigest] = None) -> bytes:
        """
        Merge the collected chunks, yielding to the event loop between groups.

        Raises:
            IncompleteFileError: If any chunk is still missing
        """
        missing = first_missing(self.chunks, self.total)
        if missing is not None:
            raise IncompleteFileError(missing, self.total)

        merged = bytearray()
        for group_start in range(0, self.total, self.group_size):
            group_end = min(group_start + self.group_size, self.total)
            for index in range(group_start, group_end):
                chunk = self.chunks[index]
                if digest is not None:
                    digest.update(chunk)
                merged += chunk
            await asyncio.sleep(0)
        return bytes(merged)
