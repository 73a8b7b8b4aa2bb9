"""Direct peer channel interface and an in-process loopback implementation."""

import asyncio
from typing import Awaitable, Callable, Optional, Protocol, Tuple

from common.exceptions import ConnectionLostError
from common.logging_config import get_logger

logger = get_logger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None]]


class DataChannel(Protocol):
    """
    Reliable, ordered, message-based channel to other peers.

    Establishing the channel (signaling, NAT traversal) happens elsewhere;
    transfers only need to send opaque messages and be told about
    incoming ones.
    """

    async def send(self, peer_id: str, payload: bytes) -> None: ...


class LoopbackChannel:
    """
    One end of an in-process channel pair.

    Messages are queued on the remote end and handed to its handler one at
    a time, in send order.
    """

    def __init__(self, local_peer_id: str):
        self.local_peer_id = local_peer_id
        self.remote: Optional["LoopbackChannel"] = None
        self.handler: Optional[MessageHandler] = None
        self.closed = False
        self.sent_messages = 0
        self._inbox: "asyncio.Queue[Tuple[str, bytes]]" = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None

    @classmethod
    def pair(cls, peer_a: str, peer_b: str) -> Tuple["LoopbackChannel", "LoopbackChannel"]:
        """Create two connected ends; the first belongs to peer_a."""
        end_a = cls(peer_a)
        end_b = cls(peer_b)
        end_a.remote = end_b
        end_b.remote = end_a
        return end_a, end_b

    def set_handler(self, handler: MessageHandler) -> None:
        self.handler = handler

    async def send(self, peer_id: str, payload: bytes) -> None:
        """
        Send payload to the remote end.

        Raises:
            ConnectionLostError: If either end is closed or peer_id is not the remote
        """
        remote = self.remote
        if self.closed or remote is None or remote.closed:
            raise ConnectionLostError(f"Channel to {peer_id} is closed")
        if remote.local_peer_id != peer_id:
            raise ConnectionLostError(f"No channel to {peer_id}")
        self.sent_messages += 1
        remote._deliver(self.local_peer_id, payload)

    def _deliver(self, from_peer: str, payload: bytes) -> None:
        self._inbox.put_nowait((from_peer, payload))
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while not self._inbox.empty():
            from_peer, payload = await self._inbox.get()
            try:
                if self.handler is not None and not self.closed:
                    await self.handler(from_peer, payload)
            except Exception as e:
                logger.error(
                    f"Message handler failed [peer_id={self.local_peer_id}] from={from_peer}: {e}",
                    exc_info=True
                )
            finally:
                self._inbox.task_done()

    async def drain(self) -> None:
        """Wait until every delivered message has been handled."""
        await self._inbox.join()

    def close(self) -> None:
        self.closed = True
