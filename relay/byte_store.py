"""Chunk byte storage for relay sessions: in-memory and on-disk backends."""

import asyncio
import re
import shutil
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

from common.logging_config import get_logger

logger = get_logger(__name__)

ChunkKey = Tuple[str, str, int]

_SAFE_COMPONENT = re.compile(r'^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}$')


class ByteStore(Protocol):
    """Key to bytes store addressed by (session_id, file_id, chunk_index)."""

    async def put(self, key: ChunkKey, data: bytes) -> None: ...

    async def get(self, key: ChunkKey) -> Optional[bytes]: ...

    async def delete(self, key: ChunkKey) -> bool: ...

    async def delete_prefix(self, session_id: str, file_id: Optional[str] = None) -> int: ...

    async def exists(self, key: ChunkKey) -> bool: ...


class MemoryByteStore:
    """Keeps chunk bytes in a process-local dictionary."""

    def __init__(self):
        self._blobs: Dict[ChunkKey, bytes] = {}

    async def put(self, key: ChunkKey, data: bytes) -> None:
        self._blobs[key] = data

    async def get(self, key: ChunkKey) -> Optional[bytes]:
        return self._blobs.get(key)

    async def delete(self, key: ChunkKey) -> bool:
        return self._blobs.pop(key, None) is not None

    async def delete_prefix(self, session_id: str, file_id: Optional[str] = None) -> int:
        doomed = [
            key for key in self._blobs
            if key[0] == session_id and (file_id is None or key[1] == file_id)
        ]
        for key in doomed:
            del self._blobs[key]
        return len(doomed)

    async def exists(self, key: ChunkKey) -> bool:
        return key in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


class DiskByteStore:
    """
    Stores each chunk as a file at <root>/<session_id>/<file_id>/chunk_<index>.

    Blocking filesystem calls run in a worker thread so request handlers
    never stall the event loop.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def ensure_root(self) -> None:
        """Ensure storage root exists."""
        self.root.mkdir(parents=True, exist_ok=True)

    def get_chunk_path(self, key: ChunkKey) -> Path:
        """
        Get file path for a chunk.

        Args:
            key: (session_id, file_id, chunk_index)

        Returns:
            Path object for chunk file
        """
        session_id, file_id, chunk_index = key
        return self.root / _safe_component(session_id) / _safe_component(file_id) / f"chunk_{chunk_index}"

    def _write(self, key: ChunkKey, data: bytes) -> None:
        path = self.get_chunk_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def _read(self, key: ChunkKey) -> Optional[bytes]:
        path = self.get_chunk_path(key)
        try:
            return path.read_bytes()
        except OSError:
            return None

    def _unlink(self, key: ChunkKey) -> bool:
        path = self.get_chunk_path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def _remove_tree(self, session_id: str, file_id: Optional[str]) -> int:
        target = self.root / _safe_component(session_id)
        if file_id is not None:
            target = target / _safe_component(file_id)
        if not target.exists():
            return 0
        count = sum(1 for p in target.rglob("chunk_*") if p.is_file())
        shutil.rmtree(target)
        return count

    async def put(self, key: ChunkKey, data: bytes) -> None:
        """
        Write chunk data to disk.

        Raises:
            OSError: If write operation fails
        """
        await asyncio.to_thread(self._write, key, data)

    async def get(self, key: ChunkKey) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, key)

    async def delete(self, key: ChunkKey) -> bool:
        return await asyncio.to_thread(self._unlink, key)

    async def delete_prefix(self, session_id: str, file_id: Optional[str] = None) -> int:
        removed = await asyncio.to_thread(self._remove_tree, session_id, file_id)
        logger.debug(
            f"Removed {removed} chunk file(s) [session_id={session_id}] [file_id={file_id}]"
        )
        return removed

    async def exists(self, key: ChunkKey) -> bool:
        return await asyncio.to_thread(self.get_chunk_path(key).exists)


def _safe_component(value: str) -> str:
    """Map a caller-chosen id to a single path component inside the store."""
    if _SAFE_COMPONENT.match(value) and value not in (".", ".."):
        return value
    return "x" + value.encode("utf-8").hex()


def create_byte_store(backend: str, path: Optional[str] = None) -> ByteStore:
    """
    Build the byte store selected by configuration.

    Args:
        backend: "memory" or "disk"
        path: Root directory for the disk backend

    Raises:
        ValueError: If the backend name is unknown
    """
    if backend == "memory":
        return MemoryByteStore()
    if backend == "disk":
        if not path:
            raise ValueError("Disk byte store requires a storage path")
        store = DiskByteStore(Path(path))
        store.ensure_root()
        return store
    raise ValueError(f"Unknown byte store backend: {backend}")
