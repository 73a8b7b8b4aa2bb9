"""Tests for chunk splitting, reassembly and streaming digests."""

import hashlib
import random

import pytest

from common.checksum import IntegrityStatus, StreamingDigest, compute_digest, verify_digest
from common.chunk_codec import ChunkAssembly, reassemble, split, total_chunks
from common.exceptions import IncompleteFileError, IntegrityMismatchError, InvalidChunkIndexError


class TestSplitAndReassemble:
    """Test chunking of byte blobs."""

    def test_total_chunks_rounds_up(self):
        assert total_chunks(0, 16) == 0
        assert total_chunks(16, 16) == 1
        assert total_chunks(17, 16) == 2
        assert total_chunks(5 * 1024 * 1024 + 1, 1024 * 1024) == 6

    def test_total_chunks_rejects_zero_chunk_size(self):
        with pytest.raises(ValueError):
            total_chunks(10, 0)

    def test_last_chunk_is_short(self):
        chunks = split(b"abcdefghij", 4)
        assert chunks == [b"abcd", b"efgh", b"ij"]

    @pytest.mark.parametrize("size,chunk_size", [(0, 8), (1, 8), (64, 8), (1000, 7)])
    def test_round_trip(self, size, chunk_size):
        blob = bytes(random.Random(size).getrandbits(8) for _ in range(size))
        chunks = split(blob, chunk_size)
        chunk_map = dict(enumerate(chunks))
        assert reassemble(chunk_map, len(chunks), group_size=3) == blob

    def test_reassemble_names_first_missing_index(self):
        chunk_map = {0: b"a", 1: b"b", 3: b"d", 5: b"f"}
        with pytest.raises(IncompleteFileError) as exc_info:
            reassemble(chunk_map, 6)
        assert exc_info.value.missing_index == 2
        assert exc_info.value.total_chunks == 6

    def test_reassemble_feeds_digest_in_index_order(self):
        blob = b"0123456789" * 50
        chunk_map = dict(reversed(list(enumerate(split(blob, 9)))))
        digest = StreamingDigest()
        assert reassemble(chunk_map, len(chunk_map), group_size=4, digest=digest) == blob
        assert digest.finalize() == hashlib.sha256(blob).hexdigest()


class TestChunkAssembly:
    """Test out-of-order collection of chunks."""

    @pytest.mark.asyncio
    async def test_out_of_order_insertion(self):
        blob = bytes(range(256)) * 40
        chunks = split(blob, 100)
        order = list(range(len(chunks)))
        random.Random(7).shuffle(order)

        assembly = ChunkAssembly("f1", len(chunks), group_size=5)
        for index in order:
            assert not assembly.is_complete
            assembly.add(index, chunks[index])

        digest = StreamingDigest()
        assert assembly.is_complete
        assert await assembly.assemble(digest) == blob
        assert digest.finalize() == compute_digest(blob)

    def test_duplicate_chunk_ignored(self):
        assembly = ChunkAssembly("f1", 2)
        assert assembly.add(0, b"aa") is True
        assert assembly.add(0, b"zz") is False
        assert assembly.chunks[0] == b"aa"
        assert assembly.received_bytes == 2

    def test_missing_and_progress(self):
        assembly = ChunkAssembly("f1", 4)
        assembly.add(3, b"d")
        assembly.add(0, b"a")
        assert assembly.missing() == [1, 2]
        assert assembly.progress == 50

    def test_index_out_of_range(self):
        assembly = ChunkAssembly("f1", 2)
        with pytest.raises(InvalidChunkIndexError):
            assembly.add(2, b"x")
        with pytest.raises(InvalidChunkIndexError):
            assembly.add(-1, b"x")

    @pytest.mark.asyncio
    async def test_assemble_incomplete_raises(self):
        assembly = ChunkAssembly("f1", 3)
        assembly.add(0, b"a")
        with pytest.raises(IncompleteFileError) as exc_info:
            await assembly.assemble()
        assert exc_info.value.missing_index == 1


class TestStreamingDigest:
    """Test incremental SHA-256."""

    def test_matches_one_shot_hash(self):
        digest = StreamingDigest()
        for piece in (b"hello ", b"chunked ", b"world"):
            digest.update(piece)
        assert digest.finalize() == hashlib.sha256(b"hello chunked world").hexdigest()
        assert digest.bytes_processed == 19

    def test_update_after_finalize_raises(self):
        digest = StreamingDigest()
        digest.update(b"x")
        first = digest.finalize()
        with pytest.raises(ValueError):
            digest.update(b"y")
        assert digest.finalize() == first

    def test_reset(self):
        digest = StreamingDigest()
        digest.update(b"x")
        digest.finalize()
        digest.reset()
        digest.update(b"abc")
        assert digest.finalize() == compute_digest(b"abc")

    def test_verify_digest_statuses(self):
        assert verify_digest("aa", None) == IntegrityStatus.PENDING
        assert verify_digest("aa", "aa") == IntegrityStatus.MATCH
        assert verify_digest("aa", "bb") == IntegrityStatus.MISMATCH

    def test_verify_digest_strict_raises(self):
        with pytest.raises(IntegrityMismatchError) as exc_info:
            verify_digest("aa", "bb", file_id="f1", strict=True)
        assert exc_info.value.file_id == "f1"
