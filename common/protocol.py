"""Direct-channel message definitions (serialization formats)."""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import List, Optional
import base64
import json


class DataType(str, Enum):
    """Tag of a message exchanged over the direct peer channel."""
    FILE = "FILE"
    FILE_HASH = "FILE_HASH"
    RELAY_FILE_INFO = "RELAY_FILE_INFO"
    RELAY_CHUNK_INFO = "RELAY_CHUNK_INFO"
    RELAY_DOWNLOAD_READY = "RELAY_DOWNLOAD_READY"
    PING = "PING"


META_CHUNK_INDEX = -1

MESSAGE_META = "META"
MESSAGE_PING = "ping"
MESSAGE_PONG = "pong"
MESSAGE_HASH_VALUE = "HASH_VALUE"
MESSAGE_HASH_MATCH = "HASH_MATCH"
MESSAGE_HASH_MISMATCH = "HASH_MISMATCH"
MESSAGE_MISSING_CHUNKS = "MISSING_CHUNKS"
MESSAGE_DOWNLOAD_COMPLETE = "DOWNLOAD_COMPLETE"

_WIRE_NAMES = {
    "data_type": "dataType",
    "file": "file",
    "file_id": "fileId",
    "file_name": "fileName",
    "file_type": "fileType",
    "file_size": "fileSize",
    "chunk_index": "chunkIndex",
    "total_chunks": "totalChunks",
    "chunk_size": "chunkSize",
    "message": "message",
    "progress": "progress",
    "file_hash": "fileHash",
    "session_id": "sessionId",
    "peer_id": "peerId",
    "missing_chunks": "missingChunks",
}

_INT_FIELDS = {"file_size", "chunk_index", "total_chunks", "chunk_size", "progress"}
_STR_FIELDS = {
    "data_type", "file", "file_id", "file_name", "file_type",
    "message", "file_hash", "session_id", "peer_id",
}


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class ChannelMessage:
    """
    One message on the direct channel.

    Every message carries a data_type and a subset of the optional fields.
    FILE messages with chunk_index == -1 announce a file (metadata only);
    other FILE messages carry chunk bytes in `file`.
    """
    data_type: DataType
    file: Optional[bytes] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    chunk_size: Optional[int] = None
    message: Optional[str] = None
    progress: Optional[int] = None
    file_hash: Optional[str] = None
    session_id: Optional[str] = None
    peer_id: Optional[str] = None
    missing_chunks: Optional[List[int]] = field(default=None)

    @property
    def is_meta(self) -> bool:
        return self.data_type == DataType.FILE and self.chunk_index == META_CHUNK_INDEX

    def to_json(self) -> bytes:
        """Serialize to JSON bytes with camelCase keys, omitting unset fields."""
        obj = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == "file":
                value = base64.b64encode(value).decode("ascii")
            elif f.name == "data_type":
                value = value.value
            obj[_WIRE_NAMES[f.name]] = value
        return json.dumps(obj).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> "ChannelMessage":
        """
        Deserialize from JSON bytes.

        Raises:
            ValueError: If the payload is not a valid message
        """
        try:
            obj = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"Malformed channel message: {e}") from e
        if not isinstance(obj, dict) or obj.get("dataType") is None:
            raise ValueError("Channel message without dataType")

        kwargs = {}
        for name, wire in _WIRE_NAMES.items():
            value = obj.get(wire)
            if value is None:
                continue
            if name in _INT_FIELDS and not _is_int(value):
                raise ValueError(f"{wire} must be an integer")
            if name in _STR_FIELDS and not isinstance(value, str):
                raise ValueError(f"{wire} must be a string")
            if name == "missing_chunks" and not (
                isinstance(value, list) and all(_is_int(i) for i in value)
            ):
                raise ValueError("missingChunks must be a list of integers")
            kwargs[name] = value
        kwargs["data_type"] = DataType(kwargs["data_type"])
        if "file" in kwargs:
            kwargs["file"] = base64.b64decode(kwargs["file"], validate=True)
        return cls(**kwargs)


def ping(peer_id: Optional[str] = None) -> ChannelMessage:
    return ChannelMessage(DataType.PING, message=MESSAGE_PING, peer_id=peer_id)


def pong(peer_id: Optional[str] = None) -> ChannelMessage:
    return ChannelMessage(DataType.PING, message=MESSAGE_PONG, peer_id=peer_id)
