"""Pydantic schemas for relay endpoints."""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RelayStatusResponse(CamelModel):
    """Response model for relay status."""
    status: str
    timestamp: str
    sessions: int


class StartSessionRequest(CamelModel):
    """Request model for session start."""
    peer_id: Optional[str] = None


class StartSessionResponse(CamelModel):
    """Response model for session start."""
    session_id: str
    created_at: str
    storage_used: int
    storage_limit: int


class SuccessResponse(CamelModel):
    success: bool


class RegisterFileRequest(CamelModel):
    """Request model for file registration. Presence is validated by the store."""
    session_id: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    total_chunks: Optional[int] = None


class UploadChunkResponse(CamelModel):
    """Response model for chunk upload."""
    success: bool
    uploaded_chunks: int
    total_chunks: int
    progress: int


class DeleteChunkRequest(CamelModel):
    session_id: Optional[str] = None


class FileStatusResponse(CamelModel):
    """Response model for file status."""
    file_name: str
    file_size: int
    total_chunks: int
    uploaded_chunks: List[int]
    downloaded_chunks: Dict[str, List[int]]
    completed: bool
