"""Pydantic schemas for API requests and responses."""

from relay.schemas.relay import (
    RelayStatusResponse,
    StartSessionRequest,
    StartSessionResponse,
    SuccessResponse,
    RegisterFileRequest,
    UploadChunkResponse,
    DeleteChunkRequest,
    FileStatusResponse
)
from relay.schemas.common import ErrorResponse

__all__ = [
    "RelayStatusResponse",
    "StartSessionRequest",
    "StartSessionResponse",
    "SuccessResponse",
    "RegisterFileRequest",
    "UploadChunkResponse",
    "DeleteChunkRequest",
    "FileStatusResponse",
    "ErrorResponse"
]
