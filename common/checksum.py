"""SHA-256 digest helpers for end-to-end file integrity."""

import hashlib
from enum import Enum
from typing import Optional

from common.exceptions import IntegrityMismatchError


class IntegrityStatus(str, Enum):
    """Outcome of comparing a local digest with the sender's."""
    MATCH = "match"
    MISMATCH = "mismatch"
    PENDING = "pending"


def compute_digest(data: bytes) -> str:
    """
    Compute SHA-256 digest for given data.

    Args:
        data: Bytes to hash

    Returns:
        Hexadecimal string representation of SHA-256 hash
    """
    return hashlib.sha256(data).hexdigest()


class StreamingDigest:
    """
    Calculate SHA-256 digest incrementally as chunks are produced or merged.

    Usage:
        digest = StreamingDigest()
        digest.update(chunk0)
        digest.update(chunk1)
        file_hash = digest.finalize()
    """

    def __init__(self):
        self._hasher = hashlib.sha256()
        self._finalized = False
        self._digest: Optional[str] = None
        self.bytes_processed = 0

    def update(self, data: bytes) -> None:
        """
        Update digest with the next chunk, in index order.

        Args:
            data: Bytes to add to the digest

        Raises:
            ValueError: If the digest was already finalized
        """
        if self._finalized:
            raise ValueError("Cannot update after finalization")
        self._hasher.update(data)
        self.bytes_processed += len(data)

    def finalize(self) -> str:
        """
        Finalize digest calculation and return result.

        Calling finalize again returns the same value.

        Returns:
            Hexadecimal string representation of SHA-256 hash
        """
        if not self._finalized:
            self._finalized = True
            self._digest = self._hasher.hexdigest()
        return self._digest

    @property
    def finalized(self) -> bool:
        return self._finalized

    def reset(self) -> None:
        """Reset digest to initial state."""
        self._hasher = hashlib.sha256()
        self._finalized = False
        self._digest = None
        self.bytes_processed = 0


def verify_digest(
    actual: str,
    expected: Optional[str],
    file_id: str = "",
    strict: bool = False
) -> IntegrityStatus:
    """
    Compare a locally computed digest with the sender's digest.

    Args:
        actual: Digest computed over the reassembled file
        expected: Digest received from the sender, None if not yet received
        file_id: File id used in the error message
        strict: Raise instead of reporting a mismatch

    Returns:
        IntegrityStatus describing the comparison

    Raises:
        IntegrityMismatchError: If strict and the digests differ
    """
    if expected is None:
        return IntegrityStatus.PENDING
    if actual == expected:
        return IntegrityStatus.MATCH
    if strict:
        raise IntegrityMismatchError(file_id, expected, actual)
    return IntegrityStatus.MISMATCH
