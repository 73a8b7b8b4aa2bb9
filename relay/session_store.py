"""Authority over relay sessions, file descriptors and stored chunks."""

import asyncio
import secrets
import time
from typing import Dict, List, Optional, Tuple

from common.constants import DEFAULT_STORAGE_LIMIT_BYTES, SESSION_ID_PREFIX
from common.exceptions import (
    ChunkNotYetUploadedError,
    FileNotFoundError,
    InvalidChunkIndexError,
    InvalidFileMetadataError,
    PayloadMissingError,
    SessionNotFoundError,
    StorageLimitExceededError,
)
from common.logging_config import get_logger
from common.types import FileStatus
from relay.byte_store import ByteStore, MemoryByteStore
from relay.models import FileRecord, Session

logger = get_logger(__name__)


class RelaySessionStore:
    """
    Owns every live relay session and the bytes stored for it.

    Session map changes are serialized by a store-wide lock; chunk
    bookkeeping of a file is serialized by that file's own lock so
    concurrent uploads of one chunk are charged to the quota once.
    """

    def __init__(
        self,
        byte_store: Optional[ByteStore] = None,
        storage_limit_bytes: int = DEFAULT_STORAGE_LIMIT_BYTES
    ):
        self.byte_store = byte_store if byte_store is not None else MemoryByteStore()
        self.storage_limit_bytes = storage_limit_bytes
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            raise SessionNotFoundError("Session not found")
        return session

    def _require_file(self, session: Session, file_id: str) -> FileRecord:
        record = session.files.get(file_id)
        if record is None:
            raise FileNotFoundError(f"File {file_id} not found in session")
        return record

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def start_session(self, peer_id: str) -> Session:
        """
        Open a new session for a peer.

        Any session the same peer still holds is ended first, so each peer
        owns at most one session at a time.

        Args:
            peer_id: Id of the requesting peer

        Returns:
            The new Session

        Raises:
            InvalidFileMetadataError: If peer_id is empty
        """
        if not peer_id:
            raise InvalidFileMetadataError("peerId required")

        async with self._lock:
            stale = [
                s.session_id for s in self._sessions.values() if s.owner_peer_id == peer_id
            ]
            for session_id in stale:
                await self._drop_session(session_id)
                logger.info(f"Ended stale session {session_id} [peer_id={peer_id}]")

            session_id = f"{SESSION_ID_PREFIX}{secrets.token_urlsafe(24)}"
            session = Session(
                session_id=session_id,
                owner_peer_id=peer_id,
                created_at=int(time.time() * 1000),
                storage_limit_bytes=self.storage_limit_bytes,
            )
            self._sessions[session_id] = session

        logger.info(f"Started session {session_id} [peer_id={peer_id}]")
        return session

    async def _drop_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        removed = await self.byte_store.delete_prefix(session_id)
        logger.debug(
            f"Released session {session_id}: files={len(session.files)} chunks={removed} "
            f"bytes={session.storage_used_bytes}"
        )
        return True

    async def end_session(self, session_id: str) -> bool:
        """
        Delete a session and every chunk stored under it.

        Returns:
            True if the session existed, False if there was nothing to end
        """
        async with self._lock:
            ended = await self._drop_session(session_id)
        if ended:
            logger.info(f"Ended session {session_id}")
        return ended

    async def register_file(
        self,
        session_id: str,
        file_id: str,
        file_name: str,
        file_size: int,
        total_chunks: int
    ) -> FileRecord:
        """
        Register a file descriptor in a session.

        Registering identical metadata again is a no-op. Different metadata
        for a known file_id replaces the record and frees its chunks.

        Raises:
            SessionNotFoundError: If the session does not exist
            InvalidFileMetadataError: If any field is missing or non-positive
        """
        session = self._require_session(session_id)
        if not file_id or not file_name or not file_size or not total_chunks:
            raise InvalidFileMetadataError("Missing required fields")
        if file_size < 0 or total_chunks < 0:
            raise InvalidFileMetadataError("fileSize and totalChunks must be positive")

        existing = session.files.get(file_id)
        if existing is not None:
            if existing.same_descriptor(file_name, file_size, total_chunks):
                return existing
            async with existing.lock:
                session.storage_used_bytes -= sum(existing.stored.values())
                existing.stored.clear()
                await self.byte_store.delete_prefix(session_id, file_id)
            logger.warning(
                f"Replaced file record {file_id} with new metadata [session_id={session_id}]"
            )

        record = FileRecord(
            file_id=file_id,
            file_name=file_name,
            file_size=file_size,
            total_chunks=total_chunks,
        )
        session.files[file_id] = record
        logger.info(
            f"Registered file {file_id} name={file_name} size={file_size} "
            f"chunks={total_chunks} [session_id={session_id}]"
        )
        return record

    def require_chunk_slot(self, session_id: str, file_id: str, chunk_index: int) -> FileRecord:
        """
        Resolve the file a chunk upload targets and check its index.

        Raises:
            SessionNotFoundError: If the session does not exist
            FileNotFoundError: If the file is not registered
            InvalidChunkIndexError: If chunk_index is outside [0, total_chunks)
        """
        session = self._require_session(session_id)
        record = self._require_file(session, file_id)
        if not 0 <= chunk_index < record.total_chunks:
            raise InvalidChunkIndexError(
                f"Chunk index {chunk_index} out of range for {record.total_chunks} chunks"
            )
        return record

    async def put_chunk(
        self,
        session_id: str,
        file_id: str,
        chunk_index: int,
        data: bytes
    ) -> Tuple[int, int]:
        """
        Store one chunk of a registered file.

        Re-uploading an index that is already present rewrites its bytes
        but never charges the quota again.

        Returns:
            Tuple of (uploaded_chunk_count, total_chunks)

        Raises:
            SessionNotFoundError: If the session does not exist
            FileNotFoundError: If the file is not registered
            PayloadMissingError: If data is empty
            InvalidChunkIndexError: If chunk_index is outside [0, total_chunks)
            StorageLimitExceededError: If storing would exceed the session quota
        """
        record = self.require_chunk_slot(session_id, file_id, chunk_index)
        session = self._sessions[session_id]
        if not data:
            raise PayloadMissingError("No chunk data received")

        key = (session_id, file_id, chunk_index)
        async with record.lock:
            if chunk_index in record.stored:
                await self.byte_store.put(key, data)
                logger.debug(
                    f"Duplicate chunk {chunk_index} of {file_id} rewritten [session_id={session_id}]"
                )
                return len(record.stored), record.total_chunks

            size = len(data)
            if session.storage_used_bytes + size > session.storage_limit_bytes:
                raise StorageLimitExceededError(
                    f"Session storage limit of {session.storage_limit_bytes} bytes exceeded"
                )
            session.storage_used_bytes += size
            try:
                await self.byte_store.put(key, data)
            except OSError:
                session.storage_used_bytes -= size
                raise

            if self._sessions.get(session_id) is not session:
                await self.byte_store.delete(key)
                raise SessionNotFoundError("Session ended during upload")

            record.stored[chunk_index] = size

        return len(record.stored), record.total_chunks

    async def get_chunk(
        self,
        session_id: str,
        file_id: str,
        chunk_index: int,
        peer_id: Optional[str] = None,
        find_across_sessions: bool = False
    ) -> Tuple[bytes, FileRecord]:
        """
        Read one chunk, optionally searching other live sessions.

        The cross-session search serves a receiver whose own session
        differs from the sender's. When peer_id is given the delivery is
        recorded on the named session's record, or on the record that held
        the chunk when the named session does not know the file.

        Returns:
            Tuple of (chunk bytes, record that held the chunk)

        Raises:
            SessionNotFoundError: If the named session does not exist
            FileNotFoundError: If no searched session knows the file
            ChunkNotYetUploadedError: If the file is known but the chunk is absent
            InvalidChunkIndexError: If chunk_index is outside the file's range
        """
        session = self._require_session(session_id)
        record = session.files.get(file_id)
        if record is not None and not 0 <= chunk_index < record.total_chunks:
            raise InvalidChunkIndexError(
                f"Chunk index {chunk_index} out of range for {record.total_chunks} chunks"
            )

        data, owner = await self._read_from(session, record, chunk_index)
        file_known = record is not None

        if data is None and find_across_sessions:
            for other in list(self._sessions.values()):
                if other is session:
                    continue
                candidate = other.files.get(file_id)
                if candidate is None:
                    continue
                file_known = True
                data, owner = await self._read_from(other, candidate, chunk_index)
                if data is not None:
                    logger.debug(
                        f"Chunk {chunk_index} of {file_id} served from session "
                        f"{other.session_id} [session_id={session_id}]"
                    )
                    break

        if data is None:
            if file_known:
                raise ChunkNotYetUploadedError(
                    f"Chunk {chunk_index} of file {file_id} not yet uploaded"
                )
            raise FileNotFoundError(f"File {file_id} not found")

        if peer_id:
            target = record if record is not None else owner
            target.downloaded.setdefault(peer_id, set()).add(chunk_index)

        return data, owner

    async def _read_from(
        self,
        session: Session,
        record: Optional[FileRecord],
        chunk_index: int
    ) -> Tuple[Optional[bytes], Optional[FileRecord]]:
        if record is None or chunk_index not in record.stored:
            return None, None
        data = await self.byte_store.get((session.session_id, record.file_id, chunk_index))
        if data is None:
            return None, None
        return data, record

    async def delete_chunk(self, session_id: str, file_id: str, chunk_index: int) -> bool:
        """
        Remove one stored chunk and release its quota.

        Returns:
            True if the chunk was stored, False otherwise

        Raises:
            SessionNotFoundError: If the session does not exist
            FileNotFoundError: If the file is not registered
        """
        session = self._require_session(session_id)
        record = self._require_file(session, file_id)
        async with record.lock:
            size = record.stored.pop(chunk_index, None)
            if size is None:
                return False
            session.storage_used_bytes -= size
            await self.byte_store.delete((session_id, file_id, chunk_index))
        logger.debug(f"Deleted chunk {chunk_index} of {file_id} [session_id={session_id}]")
        return True

    async def file_status(self, session_id: str, file_id: str) -> FileStatus:
        """
        Upload and delivery state of a file.

        Raises:
            SessionNotFoundError: If the session does not exist
            FileNotFoundError: If the file is not registered
        """
        session = self._require_session(session_id)
        return self._require_file(session, file_id).to_status()

    def status(self) -> Dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "storage_used": sum(s.storage_used_bytes for s in self._sessions.values()),
        }

    def sessions_for_peer(self, peer_id: str) -> List[Session]:
        return [s for s in self._sessions.values() if s.owner_peer_id == peer_id]

    async def shutdown(self) -> int:
        """
        End every session and free all stored chunks.

        Returns:
            Number of sessions drained
        """
        async with self._lock:
            session_ids = list(self._sessions)
            for session_id in session_ids:
                await self._drop_session(session_id)
        logger.info(f"Drained {len(session_ids)} session(s)")
        return len(session_ids)
