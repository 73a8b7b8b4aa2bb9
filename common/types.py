"""Shared data type definitions (RelaySessionInfo, FileStatus, ReceivedFile) and wire timestamps."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def iso_from_millis(millis: int) -> str:
    """
    Format epoch milliseconds as an ISO-8601 UTC string, e.g. 2024-05-01T12:00:00.000Z.
    """
    moment = datetime.fromtimestamp(millis // 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{millis % 1000:03d}Z"


def millis_from_iso(value: str) -> int:
    """
    Parse an ISO-8601 timestamp back to epoch milliseconds.

    Raises:
        ValueError: If value is not an ISO-8601 timestamp
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return round(moment.timestamp() * 1000)


@dataclass(frozen=True)
class RelaySessionInfo:
    """
    Public view of a relay session as returned by session start.
    """
    session_id: str
    created_at: int  # epoch milliseconds
    storage_used: int
    storage_limit: int


@dataclass(frozen=True)
class FileStatus:
    """
    Upload and delivery state of one relayed file.
    """
    file_name: str
    file_size: int
    total_chunks: int
    uploaded_chunks: List[int]
    downloaded_chunks: Dict[str, List[int]] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return len(self.uploaded_chunks) == self.total_chunks

    def missing(self) -> List[int]:
        uploaded = set(self.uploaded_chunks)
        return [i for i in range(self.total_chunks) if i not in uploaded]


@dataclass(frozen=True)
class ReceivedFile:
    """
    A reassembled file handed to the application.

    integrity is None until the sender's digest is known.
    """
    file_id: str
    file_name: str
    file_type: Optional[str]
    data: bytes
    digest: str
    peer_id: str
    integrity: Optional[str] = None
