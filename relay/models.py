"""In-memory records owned by the relay session store."""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Set

from common.types import FileStatus, RelaySessionInfo


@dataclass
class FileRecord:
    """
    Descriptor and chunk presence of one file registered in a session.

    stored maps each uploaded chunk index to the byte count charged to the
    session quota for it.
    """
    file_id: str
    file_name: str
    file_size: int
    total_chunks: int
    stored: Dict[int, int] = field(default_factory=dict)
    downloaded: Dict[str, Set[int]] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def uploaded_chunks(self) -> List[int]:
        return sorted(self.stored)

    @property
    def completed(self) -> bool:
        return len(self.stored) == self.total_chunks

    def same_descriptor(self, file_name: str, file_size: int, total_chunks: int) -> bool:
        return (
            self.file_name == file_name
            and self.file_size == file_size
            and self.total_chunks == total_chunks
        )

    def to_status(self) -> FileStatus:
        return FileStatus(
            file_name=self.file_name,
            file_size=self.file_size,
            total_chunks=self.total_chunks,
            uploaded_chunks=self.uploaded_chunks,
            downloaded_chunks={
                peer_id: sorted(indices) for peer_id, indices in self.downloaded.items()
            },
        )


@dataclass
class Session:
    """Server-side context of one peer's relay transfers and quota."""
    session_id: str
    owner_peer_id: str
    created_at: int
    storage_limit_bytes: int
    storage_used_bytes: int = 0
    files: Dict[str, FileRecord] = field(default_factory=dict)

    def to_info(self) -> RelaySessionInfo:
        return RelaySessionInfo(
            session_id=self.session_id,
            created_at=self.created_at,
            storage_used=self.storage_used_bytes,
            storage_limit=self.storage_limit_bytes,
        )
