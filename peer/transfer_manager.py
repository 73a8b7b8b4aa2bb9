"""Orchestration of direct and relayed transfers for one peer."""

import asyncio
import math
import uuid
from typing import Any, Awaitable, Callable, List, Optional, Set

from common.checksum import IntegrityStatus, StreamingDigest, compute_digest, verify_digest
from common.chunk_codec import ChunkAssembly, total_chunks as count_chunks
from common.constants import RELAY_CHUNK_SIZE, RELAY_SENDER_PROGRESS_CAP
from common.exceptions import (
    ChunkNotYetUploadedError,
    InvalidFileMetadataError,
    RelayException,
)
from common.logging_config import get_logger
from common.protocol import (
    MESSAGE_DOWNLOAD_COMPLETE,
    MESSAGE_MISSING_CHUNKS,
    ChannelMessage,
    DataType,
)
from common.types import ReceivedFile
from peer.cancellation import ABORTED
from peer.channel import DataChannel
from peer.config import PeerConfig
from peer.direct_transfer import DirectReceiver, DirectSender
from peer.liveness import LivenessMonitor
from peer.recovery import ChunkSourceRegistry, MissingChunkRecovery
from peer.relay_client import RelayClient
from peer.transfer_state import (
    Direction,
    TransferRegistry,
    TransferState,
    TransferStatus,
    Transport,
)

logger = get_logger(__name__)


class TransferManager:
    """
    Runs every transfer of one peer over the direct channel or the relay.

    Incoming channel messages are fed to handle_message(); relay
    downloads and re-upload requests they trigger run as background tasks.
    When the liveness monitor gives up on a peer, that peer's transfers
    are stopped, and the relay session is ended once no relay transfer
    with any peer is left.
    """

    def __init__(
        self,
        peer_id: str,
        channel: DataChannel,
        relay_client: RelayClient,
        config: Optional[PeerConfig] = None,
        on_file: Optional[Callable[[ReceivedFile], Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.peer_id = peer_id
        self.channel = channel
        self.relay_client = relay_client
        self.config = config or relay_client.config
        self.on_file = on_file
        self.relay_chunk_size = self.config.get('relay_chunk_size', RELAY_CHUNK_SIZE)
        self.reject_on_mismatch = bool(self.config.get('reject_on_mismatch', False))
        self.received: List[ReceivedFile] = []

        self.transfers = TransferRegistry()
        self.sources = ChunkSourceRegistry(relay_client)
        self.sender = DirectSender(peer_id, channel.send, sleep=sleep)
        self.receiver = DirectReceiver(
            peer_id,
            on_file=self._deliver_direct,
            on_integrity=self._on_direct_integrity,
            on_progress=self._on_direct_progress,
            send=channel.send,
            reject_on_mismatch=self.reject_on_mismatch,
        )
        self.recovery = MissingChunkRecovery(
            relay_client,
            self.send_message,
            attempts=self.config.get('recovery_attempts'),
            delay=self.config.get('recovery_delay'),
            sleep=sleep,
        )
        self.liveness = LivenessMonitor(
            peer_id,
            channel.send,
            on_unreachable=self.handle_peer_unreachable,
            interval=self.config.get('heartbeat_interval'),
            reply_timeout=self.config.get('heartbeat_reply_timeout'),
            max_missed=self.config.get('heartbeat_max_missed'),
        )
        self._tasks: Set[asyncio.Task] = set()

    async def start(self) -> None:
        await self.liveness.start()

    async def close(self) -> None:
        """Stop heartbeats, cancel background work and end the relay session."""
        await self.liveness.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.wait(set(self._tasks))
        await self.relay_client.cleanup_session()
        self.sources.clear()

    async def send_message(self, peer_id: str, message: ChannelMessage) -> None:
        await self.channel.send(peer_id, message.to_json())

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)

    def _refresh_watch(self, peer_id: str) -> None:
        if any(not s.is_terminal for s in self.transfers.for_peer(peer_id)):
            self.liveness.watch(peer_id)
        else:
            self.liveness.unwatch(peer_id)

    # direct channel

    async def send_direct(
        self,
        peer_id: str,
        file_name: str,
        data: bytes,
        file_type: Optional[str] = None
    ) -> TransferState:
        """
        Send a file over the direct channel.

        Returns:
            The finished TransferState (complete or stopped)

        Raises:
            ConnectionLostError: If the channel fails; the transfer ends in error
        """
        state = self.transfers.add(TransferState(
            file_id=uuid.uuid4().hex,
            peer_id=peer_id,
            direction=Direction.UPLOAD,
            transport=Transport.DIRECT,
            file_name=file_name,
            file_size=len(data),
        ))
        self._refresh_watch(peer_id)
        state.start()

        def on_progress(file_id: str, sent: int, total: int) -> None:
            state.update_progress(
                math.floor(sent / total * 100) if total else 100,
                min(sent * self.sender.chunk_size, len(data)),
            )

        try:
            result = await self.sender.send_file(
                peer_id, file_name, data,
                file_type=file_type,
                file_id=state.file_id,
                on_progress=on_progress,
                token=state.token,
            )
        except RelayException as e:
            state.fail(str(e))
            self._refresh_watch(peer_id)
            raise

        if result is ABORTED:
            state.stop("aborted")
        else:
            state.complete()
        self._refresh_watch(peer_id)
        return state

    def _direct_download(self, peer_id: str, file_id: str) -> Optional[TransferState]:
        return self.transfers.find(file_id, Direction.DOWNLOAD, peer_id)

    def _on_direct_progress(self, file_id: str, received: int, total: int) -> None:
        for state in self.transfers.active(Transport.DIRECT):
            if state.file_id == file_id and state.direction == Direction.DOWNLOAD:
                state.update_progress(math.floor(received / total * 100) if total else 100)

    def _on_direct_integrity(self, peer_id: str, file_id: str, integrity: IntegrityStatus) -> None:
        state = self._direct_download(peer_id, file_id)
        if state is None or state.is_terminal:
            return
        if state.status == TransferStatus.TRANSFERRING:
            state.transition(TransferStatus.VERIFYING)
        if integrity == IntegrityStatus.MISMATCH and self.reject_on_mismatch:
            state.fail("digest mismatch")
            self._refresh_watch(peer_id)

    async def _deliver_direct(self, received: ReceivedFile) -> None:
        state = self._direct_download(received.peer_id, received.file_id)
        if state is not None:
            state.complete()
            self._refresh_watch(received.peer_id)
        await self._deliver(received)

    async def _deliver(self, received: ReceivedFile) -> None:
        self.received.append(received)
        logger.info(
            f"Delivered {received.file_name} size={len(received.data)} "
            f"integrity={received.integrity} [peer_id={received.peer_id}]"
        )
        if self.on_file is not None:
            result = self.on_file(received)
            if asyncio.iscoroutine(result):
                await result

    # relay

    async def _ensure_session(self) -> str:
        if not self.relay_client.session_id:
            await self.relay_client.start_session()
        return self.relay_client.session_id

    async def send_via_relay(
        self,
        peer_id: str,
        file_name: str,
        data: bytes,
        file_type: Optional[str] = None
    ) -> TransferState:
        """
        Upload a file to the relay and announce it to peer_id.

        The returned state stays below full progress until the receiver
        confirms its download with RELAY_DOWNLOAD_READY.

        Raises:
            InvalidFileMetadataError: For an empty file
            RelayException: If the relay rejects the session, file or a chunk
        """
        total = count_chunks(len(data), self.relay_chunk_size)
        if total == 0:
            raise InvalidFileMetadataError("Cannot relay an empty file")

        state = self.transfers.add(TransferState(
            file_id=uuid.uuid4().hex,
            peer_id=peer_id,
            direction=Direction.UPLOAD,
            transport=Transport.RELAY,
            file_name=file_name,
            file_size=len(data),
        ))
        self._refresh_watch(peer_id)
        file_id = state.file_id

        try:
            session_id = await self._ensure_session()
            await self.relay_client.register_file(file_id, file_name, len(data), total)
            source = self.sources.add(file_id, data, self.relay_chunk_size, recipients=[peer_id])

            await self.send_message(peer_id, ChannelMessage(
                DataType.RELAY_FILE_INFO,
                session_id=session_id,
                peer_id=self.peer_id,
                file_id=file_id,
                file_name=file_name,
                file_type=file_type,
                file_size=len(data),
                total_chunks=total,
                chunk_size=self.relay_chunk_size,
                file_hash=compute_digest(data),
            ))
            state.start()

            uploaded = 0

            async def upload(index: int) -> bool:
                nonlocal uploaded
                chunk = source.chunk(index)
                ok = await self.relay_client.upload_chunk(file_id, index, chunk, token=state.token)
                if ok:
                    uploaded += 1
                    state.update_progress(
                        min(RELAY_SENDER_PROGRESS_CAP, math.floor(uploaded / total * 100)),
                        min(uploaded * self.relay_chunk_size, len(data)),
                    )
                return ok

            results = await asyncio.gather(*(upload(i) for i in range(total)))
        except RelayException as e:
            state.fail(str(e))
            self._refresh_watch(peer_id)
            raise

        if not all(results):
            state.stop("aborted")
            self._refresh_watch(peer_id)
            return state

        logger.info(f"Uploaded all {total} chunk(s) of {file_id} to relay [peer_id={peer_id}]")
        return state

    async def receive_via_relay(self, peer_id: str, info: ChannelMessage) -> TransferState:
        """
        Download a relayed file announced by peer_id.

        Chunks that never show up trigger missing-chunk recovery once.
        Failures leave the transfer in error and end this peer's session.

        Returns:
            The finished TransferState
        """
        file_id = info.file_id
        total = info.total_chunks or 0
        state = self.transfers.add(TransferState(
            file_id=file_id,
            peer_id=peer_id,
            direction=Direction.DOWNLOAD,
            transport=Transport.RELAY,
            file_name=info.file_name or file_id,
            file_size=info.file_size or 0,
        ))
        self._refresh_watch(peer_id)

        try:
            await self._ensure_session()
            state.start()
            assembly = ChunkAssembly(file_id, total)

            aborted = await self._download_chunks(state, info, assembly, range(total))
            if not aborted and not assembly.is_complete:
                missing = assembly.missing()
                logger.warning(
                    f"{len(missing)} chunk(s) of {file_id} unavailable, starting recovery [peer_id={peer_id}]"
                )
                await self.recovery.ensure_complete(file_id, total, peer_id, info.session_id)
                aborted = await self._download_chunks(state, info, assembly, missing, strict=True)

            if aborted:
                state.stop("aborted")
                return state

            state.transition(TransferStatus.VERIFYING)
            digest = StreamingDigest()
            data = await assembly.assemble(digest)
            actual = digest.finalize()
            integrity = verify_digest(actual, info.file_hash, file_id, strict=self.reject_on_mismatch)
            if integrity == IntegrityStatus.MISMATCH:
                logger.warning(f"Digest mismatch for relayed {file_id}, delivering anyway")

            await self._deliver(ReceivedFile(
                file_id=file_id,
                file_name=info.file_name or file_id,
                file_type=info.file_type,
                data=data,
                digest=actual,
                peer_id=peer_id,
                integrity=integrity.value,
            ))
            await self.send_message(peer_id, ChannelMessage(
                DataType.RELAY_DOWNLOAD_READY,
                file_id=file_id,
                session_id=info.session_id,
                peer_id=self.peer_id,
                message=MESSAGE_DOWNLOAD_COMPLETE,
            ))
            state.complete()
        except RelayException as e:
            logger.error(f"Relay download of {file_id} failed: {e} [peer_id={peer_id}]")
            state.fail(str(e))
            await self.relay_client.cleanup_session()
        finally:
            self._refresh_watch(peer_id)

        return state

    async def _download_chunks(
        self,
        state: TransferState,
        info: ChannelMessage,
        assembly: ChunkAssembly,
        indices,
        strict: bool = False
    ) -> bool:
        """
        Fetch indices into assembly.

        Chunks still not uploaded are left out unless strict.

        Returns:
            True if the transfer was aborted
        """
        aborted = False

        async def fetch(index: int) -> None:
            nonlocal aborted
            try:
                data = await self.relay_client.download_chunk(
                    info.file_id, index,
                    session_id=info.session_id,
                    find_across_sessions=True,
                    token=state.token,
                )
            except ChunkNotYetUploadedError:
                if strict:
                    raise
                return
            if data is None:
                aborted = True
                return
            assembly.add(index, data)
            state.update_progress(assembly.progress, assembly.received_bytes)

        await asyncio.gather(*(fetch(i) for i in indices))
        return aborted or state.token.cancelled

    async def _handle_missing_chunks(self, peer_id: str, message: ChannelMessage) -> None:
        missing = message.missing_chunks or []
        logger.info(
            f"Peer requested {len(missing)} missing chunk(s) of {message.file_id} [peer_id={peer_id}]"
        )
        state = self.transfers.find(message.file_id, Direction.UPLOAD, peer_id)
        token = state.token if state is not None else None
        await self.sources.reupload(message.file_id, missing, token=token)

    def _handle_download_ready(self, peer_id: str, message: ChannelMessage) -> None:
        state = self.transfers.find(message.file_id, Direction.UPLOAD, peer_id)
        if state is not None:
            state.complete()
        self.sources.acknowledge(message.file_id, peer_id)
        self._refresh_watch(peer_id)

    # dispatch

    async def handle_message(self, peer_id: str, raw: bytes) -> None:
        """Decode one direct-channel message and route it."""
        try:
            message = ChannelMessage.from_json(raw)
        except ValueError as e:
            logger.warning(f"Dropping malformed message [peer_id={peer_id}]: {e}")
            return

        if await self.liveness.handle_message(peer_id, message):
            return
        if self.sender.handle_message(peer_id, message):
            return

        if message.is_meta and self._direct_download(peer_id, message.file_id) is None:
            state = self.transfers.add(TransferState(
                file_id=message.file_id,
                peer_id=peer_id,
                direction=Direction.DOWNLOAD,
                transport=Transport.DIRECT,
                file_name=message.file_name or message.file_id,
                file_size=message.file_size or 0,
            ))
            state.start()
            self._refresh_watch(peer_id)

        if await self.receiver.handle_message(peer_id, message):
            return

        if message.data_type == DataType.RELAY_FILE_INFO:
            self._spawn(self.receive_via_relay(peer_id, message), f"relay-receive:{message.file_id}")
        elif message.data_type == DataType.RELAY_CHUNK_INFO and message.message == MESSAGE_MISSING_CHUNKS:
            self._spawn(self._handle_missing_chunks(peer_id, message), f"relay-reupload:{message.file_id}")
        elif message.data_type == DataType.RELAY_DOWNLOAD_READY:
            self._handle_download_ready(peer_id, message)
        else:
            logger.debug(f"Unhandled {message.data_type.value} message [peer_id={peer_id}]")

    async def handle_peer_unreachable(self, peer_id: str) -> None:
        """
        Stop every transfer with peer_id; end the relay session when no
        relay transfer remains.
        """
        stopped = self.transfers.stop_peer(peer_id, "peer unreachable")
        dropped = self.receiver.discard_peer(peer_id)
        logger.warning(
            f"Peer unreachable: stopped {len(stopped)} transfer(s), dropped {dropped} partial file(s) "
            f"[peer_id={peer_id}]"
        )
        if not self.transfers.has_active(Transport.RELAY):
            await self.relay_client.cleanup_session()
            self.sources.clear()
