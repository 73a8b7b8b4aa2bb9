"""Heartbeat exchange over the direct channel to detect vanished peers."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional

from common.constants import (
    HEARTBEAT_INTERVAL_SECONDS,
    HEARTBEAT_MAX_MISSED,
    HEARTBEAT_REPLY_TIMEOUT_SECONDS,
)
from common.logging_config import get_logger
from common.protocol import MESSAGE_PONG, ChannelMessage, DataType, ping, pong

logger = get_logger(__name__)

SendFunc = Callable[[str, bytes], Awaitable[None]]
UnreachableCallback = Callable[[str], Any]


class LivenessMonitor:
    """
    Pings every watched peer on a fixed interval.

    A ping whose send raises marks the peer unreachable at once. A ping
    left unanswered for reply_timeout counts as a miss, and max_missed
    consecutive misses mark the peer unreachable. Marking unwatches the
    peer and calls on_unreachable exactly once.

    Each endpoint runs its own monitor, so either side notices the other
    disappearing.
    """

    def __init__(
        self,
        local_peer_id: str,
        send: SendFunc,
        on_unreachable: Optional[UnreachableCallback] = None,
        interval: float = HEARTBEAT_INTERVAL_SECONDS,
        reply_timeout: float = HEARTBEAT_REPLY_TIMEOUT_SECONDS,
        max_missed: int = HEARTBEAT_MAX_MISSED
    ):
        self.local_peer_id = local_peer_id
        self.interval = interval
        self.reply_timeout = reply_timeout
        self.max_missed = max_missed
        self.on_unreachable = on_unreachable
        self.running = False
        self.missed: Dict[str, int] = {}
        self._send = send
        self._pending: Dict[str, asyncio.Future] = {}
        self._task: Optional[asyncio.Task] = None

    def watch(self, peer_id: str) -> None:
        """Start heartbeating peer_id (no-op if already watched)."""
        if peer_id not in self.missed:
            self.missed[peer_id] = 0
            logger.debug(f"Watching peer [peer_id={peer_id}]")

    def unwatch(self, peer_id: str) -> None:
        self.missed.pop(peer_id, None)
        pending = self._pending.pop(peer_id, None)
        if pending is not None and not pending.done():
            pending.cancel()

    def is_watched(self, peer_id: str) -> bool:
        return peer_id in self.missed

    async def start(self):
        """Start heartbeat background task"""
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Liveness monitor started - peer_id={self.local_peer_id}, interval={self.interval}s")

    async def stop(self):
        """Stop heartbeat background task"""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Liveness monitor stopped")

    async def _heartbeat_loop(self):
        """Ping all watched peers, then sleep for the interval"""
        while self.running:
            try:
                peers = list(self.missed)
                if peers:
                    await asyncio.gather(*(self.check_peer(p) for p in peers))
            except Exception as e:
                logger.error(f"Heartbeat round failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    async def check_peer(self, peer_id: str) -> bool:
        """
        Run one heartbeat round against peer_id.

        Returns:
            True if the peer answered in time
        """
        if peer_id not in self.missed:
            return False

        reply = asyncio.get_running_loop().create_future()
        self._pending[peer_id] = reply
        try:
            try:
                await self._send(peer_id, ping(self.local_peer_id).to_json())
            except Exception as e:
                logger.warning(f"Heartbeat send failed [peer_id={peer_id}]: {e}")
                await self._mark_unreachable(peer_id, f"heartbeat send failed: {e}")
                return False

            try:
                await asyncio.wait_for(reply, timeout=self.reply_timeout)
            except asyncio.TimeoutError:
                return await self._record_miss(peer_id)
            except asyncio.CancelledError:
                # reply is cancelled by unwatch(); anything else is our own cancellation
                if reply.cancelled() and peer_id not in self.missed:
                    return False
                raise
        finally:
            if self._pending.get(peer_id) is reply:
                del self._pending[peer_id]

        if peer_id in self.missed:
            self.missed[peer_id] = 0
        return True

    async def _record_miss(self, peer_id: str) -> bool:
        if peer_id not in self.missed:
            return False
        self.missed[peer_id] += 1
        logger.warning(
            f"Heartbeat missed [peer_id={peer_id}] missed={self.missed[peer_id]}/{self.max_missed}"
        )
        if self.missed[peer_id] >= self.max_missed:
            await self._mark_unreachable(peer_id, "heartbeat timeout")
        return False

    async def _mark_unreachable(self, peer_id: str, reason: str) -> None:
        if peer_id not in self.missed:
            return
        self.unwatch(peer_id)
        logger.warning(f"Peer unreachable [peer_id={peer_id}] reason={reason}")
        if self.on_unreachable is not None:
            result = self.on_unreachable(peer_id)
            if inspect.isawaitable(result):
                await result

    async def handle_message(self, peer_id: str, message: ChannelMessage) -> bool:
        """
        Answer pings and resolve pongs.

        Returns:
            True if the message was a heartbeat and has been consumed
        """
        if message.data_type != DataType.PING:
            return False

        if message.message == MESSAGE_PONG:
            reply = self._pending.get(peer_id)
            if reply is not None and not reply.done():
                reply.set_result(True)
            return True

        try:
            await self._send(peer_id, pong(self.local_peer_id).to_json())
        except Exception as e:
            logger.warning(f"Heartbeat reply failed [peer_id={peer_id}]: {e}")
            await self._mark_unreachable(peer_id, f"heartbeat reply failed: {e}")
        return True
