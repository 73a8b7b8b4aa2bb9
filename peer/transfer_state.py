"""Per-transfer state machine and the registry of a peer's transfers."""

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

from common.constants import MAX_FINISHED_TRANSFERS
from common.exceptions import InvalidTransitionError
from common.logging_config import get_logger
from peer.cancellation import CancellationToken

logger = get_logger(__name__)


class Direction(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class Transport(str, Enum):
    DIRECT = "direct"
    RELAY = "relay"


class TransferStatus(str, Enum):
    PENDING = "pending"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    STOPPED = "stopped"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({
    TransferStatus.COMPLETE,
    TransferStatus.STOPPED,
    TransferStatus.ERROR,
})

ALLOWED_TRANSITIONS = {
    TransferStatus.PENDING: {
        TransferStatus.TRANSFERRING,
        TransferStatus.STOPPED,
        TransferStatus.ERROR,
    },
    TransferStatus.TRANSFERRING: {
        TransferStatus.VERIFYING,
        TransferStatus.COMPLETE,
        TransferStatus.STOPPED,
        TransferStatus.ERROR,
    },
    TransferStatus.VERIFYING: {
        TransferStatus.COMPLETE,
        TransferStatus.ERROR,
    },
}

SPEED_SAMPLE_COUNT = 10


@dataclass
class TransferState:
    """
    Client-local progress of one transfer.

    Terminal statuses are final: later transitions are ignored and
    reported as False so racing completion and stop paths stay harmless.
    """
    file_id: str
    peer_id: str
    direction: Direction
    transport: Transport
    file_name: str = ""
    file_size: int = 0
    transfer_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TransferStatus = TransferStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    token: CancellationToken = field(default_factory=CancellationToken)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    speed_samples: Deque[Tuple[float, int]] = field(
        default_factory=lambda: deque(maxlen=SPEED_SAMPLE_COUNT), repr=False
    )
    bytes_transferred: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: TransferStatus, error: Optional[str] = None) -> bool:
        """
        Move to new_status.

        Returns:
            True if the status changed, False if already terminal

        Raises:
            InvalidTransitionError: If the edge is not allowed
        """
        if self.is_terminal:
            logger.debug(
                f"Ignoring {self.status.value} -> {new_status.value} [transfer_id={self.transfer_id}]"
            )
            return False
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move transfer {self.transfer_id} from {self.status.value} to {new_status.value}"
            )

        self.status = new_status
        if error is not None:
            self.error = error
        if new_status == TransferStatus.COMPLETE:
            self.progress = 100
        if new_status in (TransferStatus.STOPPED, TransferStatus.ERROR):
            self.token.cancel(new_status.value)
        logger.info(
            f"Transfer {self.transfer_id} {self.direction.value}/{self.transport.value} "
            f"-> {new_status.value} [file_id={self.file_id}] [peer_id={self.peer_id}]"
            + (f" error={error}" if error else "")
        )
        return True

    def start(self) -> bool:
        return self.transition(TransferStatus.TRANSFERRING)

    def complete(self) -> bool:
        return self.transition(TransferStatus.COMPLETE)

    def stop(self, reason: str = "stopped") -> bool:
        if self.status == TransferStatus.VERIFYING:
            return self.transition(TransferStatus.ERROR, reason)
        return self.transition(TransferStatus.STOPPED, reason)

    def fail(self, error: str) -> bool:
        return self.transition(TransferStatus.ERROR, error)

    def update_progress(self, progress: int, bytes_transferred: Optional[int] = None) -> None:
        """Record progress (0-100) and, when given, total bytes moved so far."""
        if self.is_terminal:
            return
        self.progress = max(0, min(100, int(progress)))
        if bytes_transferred is not None:
            self.bytes_transferred = bytes_transferred
            self.speed_samples.append((self.clock(), bytes_transferred))

    @property
    def speed(self) -> float:
        """Bytes per second over the retained samples."""
        if len(self.speed_samples) < 2:
            return 0.0
        (t0, b0), (t1, b1) = self.speed_samples[0], self.speed_samples[-1]
        if t1 <= t0:
            return 0.0
        return (b1 - b0) / (t1 - t0)


class TransferRegistry:
    """
    All transfers known to one peer, indexed by transfer id.

    Only the newest max_finished terminal transfers are kept; older ones
    are evicted as new transfers are added.
    """

    def __init__(self, max_finished: int = MAX_FINISHED_TRANSFERS):
        self.max_finished = max_finished
        self._transfers: Dict[str, TransferState] = {}

    def add(self, state: TransferState) -> TransferState:
        self._evict_finished()
        self._transfers[state.transfer_id] = state
        return state

    def _evict_finished(self) -> None:
        finished = [tid for tid, s in self._transfers.items() if s.is_terminal]
        for transfer_id in finished[:max(0, len(finished) - self.max_finished)]:
            del self._transfers[transfer_id]

    def get(self, transfer_id: str) -> Optional[TransferState]:
        return self._transfers.get(transfer_id)

    def find(
        self,
        file_id: str,
        direction: Optional[Direction] = None,
        peer_id: Optional[str] = None
    ) -> Optional[TransferState]:
        for state in self._transfers.values():
            if state.file_id != file_id:
                continue
            if direction is not None and state.direction != direction:
                continue
            if peer_id is not None and state.peer_id != peer_id:
                continue
            return state
        return None

    def for_peer(self, peer_id: str) -> List[TransferState]:
        return [s for s in self._transfers.values() if s.peer_id == peer_id]

    def active(self, transport: Optional[Transport] = None) -> List[TransferState]:
        return [
            s for s in self._transfers.values()
            if not s.is_terminal and (transport is None or s.transport == transport)
        ]

    def has_active(self, transport: Optional[Transport] = None) -> bool:
        return bool(self.active(transport))

    def active_peers(self) -> List[str]:
        return sorted({s.peer_id for s in self.active()})

    def stop_peer(
        self,
        peer_id: str,
        reason: str = "peer unreachable",
        transport: Optional[Transport] = None
    ) -> List[TransferState]:
        """
        Stop every non-terminal transfer with peer_id.

        Returns:
            The transfers that changed status
        """
        stopped = []
        for state in self.for_peer(peer_id):
            if transport is not None and state.transport != transport:
                continue
            if state.stop(reason):
                stopped.append(state)
        return stopped

    def __len__(self) -> int:
        return len(self._transfers)
