"""Sending and receiving whole files as chunk messages over the direct channel."""

import asyncio
import inspect
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from common.checksum import IntegrityStatus, StreamingDigest, verify_digest
from common.chunk_codec import ChunkAssembly, chunk_bounds, total_chunks
from common.constants import DIRECT_BATCH_DELAY_SECONDS, DIRECT_BATCH_SIZE, DIRECT_CHUNK_SIZE
from common.exceptions import ConnectionLostError, InvalidChunkIndexError
from common.logging_config import get_logger
from common.protocol import (
    MESSAGE_HASH_MATCH,
    MESSAGE_HASH_MISMATCH,
    MESSAGE_HASH_VALUE,
    MESSAGE_META,
    META_CHUNK_INDEX,
    ChannelMessage,
    DataType,
)
from common.types import ReceivedFile
from peer.cancellation import ABORTED, CancellationToken, _Aborted

logger = get_logger(__name__)

SendFunc = Callable[[str, bytes], Awaitable[None]]
ProgressCallback = Callable[[str, int, int], Any]


async def _call(callback: Optional[Callable[..., Any]], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class DirectSender:
    """
    Streams a file as META, data chunks in bounded batches, then its digest.

    A batch of up to batch_size sends runs concurrently; the next batch
    starts only after every send of the previous one returned, with a
    short pause in between to let the channel drain its buffer.
    """

    def __init__(
        self,
        local_peer_id: str,
        send: SendFunc,
        chunk_size: int = DIRECT_CHUNK_SIZE,
        batch_size: int = DIRECT_BATCH_SIZE,
        batch_delay: float = DIRECT_BATCH_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.local_peer_id = local_peer_id
        self.chunk_size = chunk_size
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.verdicts: Dict[str, str] = {}
        self._send_raw = send
        self._sleep = sleep

    async def _send(self, peer_id: str, message: ChannelMessage) -> None:
        try:
            await self._send_raw(peer_id, message.to_json())
        except ConnectionLostError:
            raise
        except Exception as e:
            raise ConnectionLostError(f"Send to {peer_id} failed: {e}") from e

    async def send_file(
        self,
        peer_id: str,
        file_name: str,
        data: bytes,
        file_type: Optional[str] = None,
        file_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None
    ) -> Union[Tuple[str, str], _Aborted]:
        """
        Send a whole file to peer_id.

        Args:
            peer_id: Receiving peer
            file_name: Name announced in the META message
            data: File contents
            file_type: Optional MIME type
            file_id: Id to use, random when None
            on_progress: Called with (file_id, sent_chunks, total_chunks) after each batch
            token: Cancellation token checked between batches

        Returns:
            Tuple of (file_id, sha256 hex digest), or ABORTED if cancelled

        Raises:
            ConnectionLostError: If the channel fails mid-transfer
        """
        file_id = file_id or uuid.uuid4().hex
        total = total_chunks(len(data), self.chunk_size)

        await self._send(peer_id, ChannelMessage(
            DataType.FILE,
            file_id=file_id,
            file_name=file_name,
            file_type=file_type,
            file_size=len(data),
            chunk_index=META_CHUNK_INDEX,
            total_chunks=total,
            chunk_size=self.chunk_size,
            message=MESSAGE_META,
            peer_id=self.local_peer_id,
        ))
        logger.info(
            f"Sending {file_name} directly: file_id={file_id} size={len(data)} chunks={total} [peer_id={peer_id}]"
        )

        digest = StreamingDigest()
        view = memoryview(data)
        for batch_start in range(0, total, self.batch_size):
            if token is not None and token.cancelled:
                logger.info(f"Direct send of {file_id} aborted at chunk {batch_start}")
                return ABORTED

            batch = []
            for index in range(batch_start, min(batch_start + self.batch_size, total)):
                start, end = chunk_bounds(index, len(data), self.chunk_size)
                chunk = bytes(view[start:end])
                digest.update(chunk)
                batch.append(self._send(peer_id, ChannelMessage(
                    DataType.FILE,
                    file=chunk,
                    file_id=file_id,
                    chunk_index=index,
                    total_chunks=total,
                )))
            await asyncio.gather(*batch)

            sent = min(batch_start + self.batch_size, total)
            await _call(on_progress, file_id, sent, total)
            if sent < total:
                await self._sleep(self.batch_delay)

        file_hash = digest.finalize()
        await self._send(peer_id, ChannelMessage(
            DataType.FILE_HASH,
            file_id=file_id,
            file_hash=file_hash,
            message=MESSAGE_HASH_VALUE,
        ))
        return file_id, file_hash

    def handle_message(self, peer_id: str, message: ChannelMessage) -> bool:
        """
        Record the receiver's integrity verdict for a sent file.

        Returns:
            True if the message was a verdict
        """
        if message.data_type != DataType.FILE_HASH or message.message not in (
            MESSAGE_HASH_MATCH, MESSAGE_HASH_MISMATCH
        ):
            return False
        self.verdicts[message.file_id] = message.message
        if message.message == MESSAGE_HASH_MISMATCH:
            logger.warning(f"Receiver reported digest mismatch for {message.file_id} [peer_id={peer_id}]")
        return True


@dataclass
class _Incoming:
    meta: ChannelMessage
    assembly: ChunkAssembly
    expected_hash: Optional[str] = None
    finishing: bool = False


class DirectReceiver:
    """
    Rebuilds files from chunk messages arriving in any order.

    A file is assembled once every chunk and the sender's digest are in.
    On a digest mismatch the file is still delivered unless
    reject_on_mismatch is set; the verdict is reported either way.
    """

    def __init__(
        self,
        local_peer_id: str,
        on_file: Optional[Callable[[ReceivedFile], Any]] = None,
        on_integrity: Optional[Callable[[str, str, IntegrityStatus], Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        send: Optional[SendFunc] = None,
        reject_on_mismatch: bool = False
    ):
        self.local_peer_id = local_peer_id
        self.on_file = on_file
        self.on_integrity = on_integrity
        self.on_progress = on_progress
        self.reject_on_mismatch = reject_on_mismatch
        self._send = send
        self._incoming: Dict[Tuple[str, str], _Incoming] = {}

    @property
    def in_progress(self) -> int:
        return len(self._incoming)

    def discard_peer(self, peer_id: str) -> int:
        """Drop partial files from peer_id."""
        doomed = [key for key in self._incoming if key[0] == peer_id]
        for key in doomed:
            del self._incoming[key]
        return len(doomed)

    async def handle_message(self, peer_id: str, message: ChannelMessage) -> bool:
        """
        Consume FILE and FILE_HASH messages.

        Returns:
            True if the message was consumed
        """
        if message.data_type == DataType.FILE:
            if message.is_meta:
                self._start(peer_id, message)
            else:
                self._add_chunk(peer_id, message)
            await self._maybe_finish((peer_id, message.file_id))
            return True

        if message.data_type == DataType.FILE_HASH and message.message == MESSAGE_HASH_VALUE:
            incoming = self._incoming.get((peer_id, message.file_id))
            if incoming is None:
                logger.warning(f"Digest for unknown file {message.file_id} [peer_id={peer_id}]")
                return True
            incoming.expected_hash = message.file_hash
            await self._maybe_finish((peer_id, message.file_id))
            return True

        return False

    def _start(self, peer_id: str, meta: ChannelMessage) -> None:
        key = (peer_id, meta.file_id)
        if key in self._incoming:
            logger.debug(f"Duplicate META for {meta.file_id} ignored [peer_id={peer_id}]")
            return
        self._incoming[key] = _Incoming(
            meta=meta,
            assembly=ChunkAssembly(meta.file_id, meta.total_chunks or 0),
        )
        logger.info(
            f"Receiving {meta.file_name}: file_id={meta.file_id} size={meta.file_size} "
            f"chunks={meta.total_chunks} [peer_id={peer_id}]"
        )

    def _add_chunk(self, peer_id: str, message: ChannelMessage) -> None:
        incoming = self._incoming.get((peer_id, message.file_id))
        if incoming is None:
            logger.warning(
                f"Dropping chunk {message.chunk_index} of unknown file {message.file_id} [peer_id={peer_id}]"
            )
            return
        if not message.file:
            logger.warning(f"Empty chunk {message.chunk_index} of {message.file_id} dropped")
            return
        try:
            incoming.assembly.add(message.chunk_index, message.file)
        except InvalidChunkIndexError as e:
            logger.warning(f"{e} [peer_id={peer_id}]")

    async def _maybe_finish(self, key: Tuple[str, str]) -> Optional[ReceivedFile]:
        incoming = self._incoming.get(key)
        if incoming is None:
            return None
        peer_id, file_id = key
        assembly = incoming.assembly
        await _call(self.on_progress, file_id, len(assembly.chunks), assembly.total)
        if incoming.finishing or not assembly.is_complete or incoming.expected_hash is None:
            return None

        incoming.finishing = True
        digest = StreamingDigest()
        data = await assembly.assemble(digest)
        actual = digest.finalize()
        integrity = verify_digest(actual, incoming.expected_hash, file_id)
        del self._incoming[key]

        if self._send is not None:
            verdict = MESSAGE_HASH_MATCH if integrity == IntegrityStatus.MATCH else MESSAGE_HASH_MISMATCH
            try:
                await self._send(peer_id, ChannelMessage(
                    DataType.FILE_HASH, file_id=file_id, file_hash=actual, message=verdict
                ).to_json())
            except Exception as e:
                logger.warning(f"Could not report digest verdict for {file_id}: {e}")

        await _call(self.on_integrity, peer_id, file_id, integrity)
        if integrity == IntegrityStatus.MISMATCH:
            if self.reject_on_mismatch:
                logger.error(f"Rejecting {file_id}: digest mismatch [peer_id={peer_id}]")
                return None
            logger.warning(f"Digest mismatch for {file_id}, delivering anyway [peer_id={peer_id}]")

        received = ReceivedFile(
            file_id=file_id,
            file_name=incoming.meta.file_name or file_id,
            file_type=incoming.meta.file_type,
            data=data,
            digest=actual,
            peer_id=peer_id,
            integrity=integrity.value,
        )
        await _call(self.on_file, received)
        return received
