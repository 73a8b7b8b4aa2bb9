"""Exception taxonomy shared by the relay server and the peer client."""

from typing import Iterable, Optional


class RelayException(Exception):
    """
    Base exception class for all transfer and relay errors.

    Subclasses carry the HTTP status and machine-readable code used on the
    wire, so the server can render them and the client can map them back.
    """
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False


class SessionNotFoundError(RelayException):
    """
    Raised when a relay session id is unknown or already ended.
    """
    status_code = 404
    code = "SESSION_NOT_FOUND"


class FileNotFoundError(RelayException):
    """
    Raised when a file id was never registered in the session.
    """
    status_code = 404
    code = "FILE_NOT_FOUND"


class ChunkNotYetUploadedError(RelayException):
    """
    Raised when a registered file does not hold the requested chunk yet.

    Callers should retry with backoff.
    """
    status_code = 404
    code = "CHUNK_NOT_YET_UPLOADED"
    retryable = True


class ChunkNotFoundError(RelayException):
    """
    Raised when deleting a chunk that is not stored.
    """
    status_code = 404
    code = "CHUNK_NOT_FOUND"


class InvalidFileMetadataError(RelayException):
    """
    Raised when required request fields are missing or non-positive.
    """
    status_code = 400
    code = "INVALID_FILE_METADATA"


class InvalidChunkIndexError(RelayException):
    """
    Raised when a chunk index lies outside [0, total_chunks).
    """
    status_code = 400
    code = "INVALID_CHUNK_INDEX"


class PayloadMissingError(RelayException):
    """
    Raised when a chunk upload carries no bytes.
    """
    status_code = 400
    code = "PAYLOAD_MISSING"


class StorageLimitExceededError(RelayException):
    """
    Raised when storing a chunk would exceed the session quota.
    """
    status_code = 507
    code = "STORAGE_LIMIT_EXCEEDED"


class IntegrityMismatchError(RelayException):
    """
    Raised when a reassembled file's digest differs from the sender's.
    """
    code = "INTEGRITY_MISMATCH"

    def __init__(self, file_id: str, expected: str, actual: str):
        super().__init__(
            f"Digest mismatch for file {file_id}: expected {expected}, got {actual}"
        )
        self.file_id = file_id
        self.expected = expected
        self.actual = actual


class IncompleteFileError(RelayException):
    """
    Raised when reassembly finds a missing chunk index.
    """
    code = "INCOMPLETE_FILE"

    def __init__(self, missing_index: int, total_chunks: int):
        super().__init__(
            f"Chunk {missing_index} of {total_chunks} is missing"
        )
        self.missing_index = missing_index
        self.total_chunks = total_chunks


class PeerUnreachableError(RelayException):
    """
    Raised when the counterpart peer stops answering on the direct channel.
    """
    status_code = 503
    code = "PEER_UNREACHABLE"


class ConnectionLostError(PeerUnreachableError):
    """
    Raised when a send on the direct channel fails mid-transfer.
    """
    code = "CONNECTION_LOST"


class RecoveryFailedError(RelayException):
    """
    Raised when a relay copy is still incomplete after recovery retries.
    """
    code = "RECOVERY_FAILED"

    def __init__(self, file_id: str, missing: Optional[Iterable[int]] = None):
        self.file_id = file_id
        self.missing = sorted(missing or [])
        super().__init__(
            f"File {file_id} still missing {len(self.missing)} chunk(s) after recovery"
        )


class RelayUnavailableError(RelayException):
    """
    Raised when the relay server is unreachable after retries.
    """
    status_code = 503
    code = "RELAY_UNAVAILABLE"


class InvalidTransitionError(RelayException):
    """
    Raised on an illegal transfer state change.
    """
    code = "INVALID_TRANSITION"


ERROR_CODES = {
    cls.code: cls
    for cls in (
        SessionNotFoundError,
        FileNotFoundError,
        ChunkNotYetUploadedError,
        ChunkNotFoundError,
        InvalidFileMetadataError,
        InvalidChunkIndexError,
        PayloadMissingError,
        StorageLimitExceededError,
        PeerUnreachableError,
        RelayUnavailableError,
    )
}


def exception_for_code(code: Optional[str], detail: str) -> RelayException:
    """
    Build the exception matching a wire error code.

    Unknown codes map to the base RelayException.
    """
    cls = ERROR_CODES.get(code or "")
    if cls is None:
        return RelayException(detail)
    return cls(detail)
