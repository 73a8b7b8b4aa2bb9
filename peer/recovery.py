"""Recovery of chunks missing from a relay copy after a partial upload."""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from common.chunk_codec import chunk_bounds, total_chunks as count_chunks
from common.constants import RECOVERY_ATTEMPTS, RECOVERY_DELAY_SECONDS
from common.exceptions import FileNotFoundError, PeerUnreachableError, RecoveryFailedError
from common.logging_config import get_logger
from common.protocol import MESSAGE_MISSING_CHUNKS, ChannelMessage, DataType
from common.types import FileStatus
from peer.cancellation import CancellationToken
from peer.relay_client import RelayClient

logger = get_logger(__name__)

SendMessage = Callable[[str, ChannelMessage], Awaitable[None]]


def missing_indices(total: int, uploaded: Iterable[int]) -> List[int]:
    """Sorted indices of [0, total) not present in uploaded."""
    present = set(uploaded)
    return [i for i in range(total) if i not in present]


class MissingChunkRecovery:
    """
    Receiver side: asks the sender to re-upload what the relay lacks.

    The request travels over the direct channel, then the relay status is
    polled a bounded number of times with a fixed delay.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        send_message: SendMessage,
        attempts: int = RECOVERY_ATTEMPTS,
        delay: float = RECOVERY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.relay_client = relay_client
        self.send_message = send_message
        self.attempts = attempts
        self.delay = delay
        self._sleep = sleep

    def build_request(
        self,
        file_id: str,
        total_chunks: int,
        missing: List[int],
        session_id: Optional[str]
    ) -> ChannelMessage:
        return ChannelMessage(
            DataType.RELAY_CHUNK_INFO,
            file_id=file_id,
            total_chunks=total_chunks,
            message=MESSAGE_MISSING_CHUNKS,
            missing_chunks=missing,
            session_id=session_id,
            peer_id=self.relay_client.peer_id,
        )

    async def ensure_complete(
        self,
        file_id: str,
        total_chunks: int,
        sender_peer_id: str,
        session_id: Optional[str] = None
    ) -> FileStatus:
        """
        Make sure the relay holds every chunk of file_id.

        Args:
            file_id: Relayed file
            total_chunks: Declared chunk count
            sender_peer_id: Peer that owns the source bytes
            session_id: Session the sender uploaded into

        Returns:
            The complete FileStatus

        Raises:
            PeerUnreachableError: If the request cannot be sent
            RecoveryFailedError: If chunks are still missing after all attempts
        """
        status = await self.relay_client.get_file_status(file_id, session_id)
        missing = missing_indices(total_chunks, status.uploaded_chunks)
        if not missing:
            return status

        logger.warning(
            f"Relay copy of {file_id} missing {len(missing)}/{total_chunks} chunk(s), "
            f"requesting re-upload [peer_id={sender_peer_id}]"
        )
        request = self.build_request(file_id, total_chunks, missing, session_id)
        try:
            await self.send_message(sender_peer_id, request)
        except Exception as e:
            raise PeerUnreachableError(
                f"Cannot request missing chunks from {sender_peer_id}: {e}"
            ) from e

        for attempt in range(self.attempts):
            await self._sleep(self.delay)
            status = await self.relay_client.get_file_status(file_id, session_id)
            missing = missing_indices(total_chunks, status.uploaded_chunks)
            if not missing:
                logger.info(f"Recovered {file_id} after {attempt + 1} check(s)")
                return status
            logger.info(
                f"Still missing {len(missing)} chunk(s) of {file_id} "
                f"(attempt {attempt + 1}/{self.attempts})"
            )

        raise RecoveryFailedError(file_id, missing)


@dataclass
class ChunkSource:
    """Original bytes of a file this peer is relaying."""
    file_id: str
    data: bytes
    chunk_size: int
    recipients: Set[str] = field(default_factory=set)
    acknowledged: Set[str] = field(default_factory=set)

    @property
    def total_chunks(self) -> int:
        return count_chunks(len(self.data), self.chunk_size)

    def chunk(self, index: int) -> bytes:
        start, end = chunk_bounds(index, len(self.data), self.chunk_size)
        return self.data[start:end]


class ChunkSourceRegistry:
    """
    Sender side: keeps source bytes until every recipient has the file.

    Sources are released when all recipients acknowledge or on clear()
    when the relay session ends.
    """

    def __init__(self, relay_client: RelayClient):
        self.relay_client = relay_client
        self._sources: Dict[str, ChunkSource] = {}

    def add(
        self,
        file_id: str,
        data: bytes,
        chunk_size: int,
        recipients: Iterable[str] = ()
    ) -> ChunkSource:
        source = ChunkSource(file_id=file_id, data=data, chunk_size=chunk_size, recipients=set(recipients))
        self._sources[file_id] = source
        return source

    def get(self, file_id: str) -> Optional[ChunkSource]:
        return self._sources.get(file_id)

    def __contains__(self, file_id: str) -> bool:
        return file_id in self._sources

    def __len__(self) -> int:
        return len(self._sources)

    async def reupload(
        self,
        file_id: str,
        indices: Iterable[int],
        token: Optional[CancellationToken] = None
    ) -> int:
        """
        Upload exactly the requested chunk indices again.

        Indices outside the file are skipped.

        Returns:
            Number of chunks stored by the relay

        Raises:
            FileNotFoundError: If the source bytes are no longer kept
        """
        source = self._sources.get(file_id)
        if source is None:
            raise FileNotFoundError(f"No source kept for file {file_id}")

        requested = set(indices)
        valid = sorted(i for i in requested if 0 <= i < source.total_chunks)
        if len(valid) != len(requested):
            logger.warning(
                f"Skipping {len(requested) - len(valid)} out-of-range index(es) for {file_id}"
            )

        results = await asyncio.gather(*(
            self.relay_client.upload_chunk(file_id, index, source.chunk(index), token=token)
            for index in valid
        ))
        uploaded = sum(1 for ok in results if ok)
        logger.info(f"Re-uploaded {uploaded}/{len(valid)} chunk(s) of {file_id}")
        return uploaded

    def acknowledge(self, file_id: str, peer_id: str) -> bool:
        """
        Record that peer_id has the complete file.

        Returns:
            True if the source was released
        """
        source = self._sources.get(file_id)
        if source is None:
            return False
        source.acknowledged.add(peer_id)
        if source.recipients <= source.acknowledged:
            del self._sources[file_id]
            logger.debug(f"Released source of {file_id}")
            return True
        return False

    def clear(self) -> int:
        released = len(self._sources)
        self._sources.clear()
        return released
