"""Relay session, file and chunk API routes."""

import math
import time
from typing import Optional

from fastapi import APIRouter, Body, Depends, File, Form, Query, UploadFile
from fastapi.responses import Response

from common.constants import RELAY_STATUS_ONLINE
from common.exceptions import ChunkNotFoundError, PayloadMissingError, SessionNotFoundError
from common.logging_config import get_logger
from common.rate_limiter import RateLimiter
from common.types import iso_from_millis
from relay.dependencies import get_download_limiter, get_session_store, get_upload_limiter
from relay.schemas.common import ErrorResponse
from relay.schemas.relay import (
    DeleteChunkRequest,
    FileStatusResponse,
    RegisterFileRequest,
    RelayStatusResponse,
    StartSessionRequest,
    StartSessionResponse,
    SuccessResponse,
    UploadChunkResponse
)
from relay.session_store import RelaySessionStore

logger = get_logger(__name__)

router = APIRouter(
    prefix="/relay",
    tags=["Relay"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)


@router.get("/status", response_model=RelayStatusResponse)
async def relay_status(store: RelaySessionStore = Depends(get_session_store)):
    """
    Report that the relay is up and how many sessions are live.
    """
    return RelayStatusResponse(
        status=RELAY_STATUS_ONLINE,
        timestamp=iso_from_millis(int(time.time() * 1000)),
        sessions=store.status()["sessions"],
    )


@router.post("/session/start", response_model=StartSessionResponse)
async def start_session(
    body: Optional[StartSessionRequest] = Body(None),
    store: RelaySessionStore = Depends(get_session_store)
):
    """
    Open a relay session for a peer.

    Parameters:
        - peerId: Id of the requesting peer (required)

    Returns:
        - sessionId: Capability token addressing the session
        - createdAt: Creation time as an ISO-8601 UTC string
        - storageUsed / storageLimit: Quota counters in bytes

    Raises:
        - 400: Missing peerId
    """
    session = await store.start_session(body.peer_id if body else None)
    info = session.to_info()
    return StartSessionResponse(
        session_id=info.session_id,
        created_at=iso_from_millis(info.created_at),
        storage_used=info.storage_used,
        storage_limit=info.storage_limit,
    )


@router.delete("/session/{session_id}", response_model=SuccessResponse)
async def end_session(
    session_id: str,
    store: RelaySessionStore = Depends(get_session_store)
):
    """
    End a session and release all of its chunks.

    Raises:
        - 404: Unknown session
    """
    if not await store.end_session(session_id):
        raise SessionNotFoundError("Session not found")
    return SuccessResponse(success=True)


@router.post("/file/register", response_model=SuccessResponse)
async def register_file(
    body: Optional[RegisterFileRequest] = Body(None),
    store: RelaySessionStore = Depends(get_session_store)
):
    """
    Register a file descriptor in a session.

    Raises:
        - 404: Unknown session
        - 400: Missing or non-positive fields
    """
    body = body or RegisterFileRequest()
    await store.register_file(
        session_id=body.session_id,
        file_id=body.file_id,
        file_name=body.file_name,
        file_size=body.file_size,
        total_chunks=body.total_chunks,
    )
    return SuccessResponse(success=True)


@router.post("/file/{file_id}/chunk/{chunk_index}", response_model=UploadChunkResponse)
async def upload_chunk(
    file_id: str,
    chunk_index: int,
    chunk: Optional[UploadFile] = File(None),
    session_id: Optional[str] = Form(None, alias="sessionId"),
    store: RelaySessionStore = Depends(get_session_store),
    limiter: RateLimiter = Depends(get_upload_limiter)
):
    """
    Store one chunk of a registered file.

    Parameters:
        - chunk: Chunk bytes (multipart/form-data)
        - sessionId: Session the file is registered in (form field)

    Returns:
        - uploadedChunks: Number of distinct chunks stored
        - totalChunks: Declared chunk count
        - progress: floor(uploadedChunks / totalChunks * 100)

    Raises:
        - 404: Unknown session or file
        - 400: Missing chunk or index out of range
        - 507: Session storage limit exceeded
    """
    store.require_chunk_slot(session_id, file_id, chunk_index)
    session = store.get_session(session_id)
    if chunk is None:
        raise PayloadMissingError("No chunk data received")

    data = await chunk.read()
    if not data:
        raise PayloadMissingError("No chunk data received")
    await limiter.throttle(len(data), key=session.owner_peer_id)

    uploaded, total = await store.put_chunk(session_id, file_id, chunk_index, data)
    return UploadChunkResponse(
        success=True,
        uploaded_chunks=uploaded,
        total_chunks=total,
        progress=math.floor(uploaded / total * 100),
    )


@router.get("/file/{file_id}/chunk/{chunk_index}")
async def download_chunk(
    file_id: str,
    chunk_index: int,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    peer_id: Optional[str] = Query(None, alias="peerId"),
    find_across_sessions: bool = Query(False, alias="findAcrossSessions"),
    store: RelaySessionStore = Depends(get_session_store),
    limiter: RateLimiter = Depends(get_download_limiter)
):
    """
    Return the raw bytes of one chunk.

    Parameters:
        - sessionId: Session of the caller (query)
        - peerId: Downloading peer, recorded for delivery tracking (query, optional)
        - findAcrossSessions: Search other live sessions for the file (query, optional)

    Raises:
        - 404: Unknown session or file, or chunk not yet uploaded (body has waiting=true)
    """
    data, record = await store.get_chunk(
        session_id,
        file_id,
        chunk_index,
        peer_id=peer_id,
        find_across_sessions=find_across_sessions,
    )
    await limiter.throttle(len(data), key=peer_id or session_id)

    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={
            "X-Chunk-Index": str(chunk_index),
            "X-Total-Chunks": str(record.total_chunks),
            "X-File-Id": file_id,
            "Cache-Control": "no-cache, no-store, must-revalidate",
        },
    )


@router.delete("/file/{file_id}/chunk/{chunk_index}", response_model=SuccessResponse)
async def delete_chunk(
    file_id: str,
    chunk_index: int,
    body: Optional[DeleteChunkRequest] = Body(None),
    store: RelaySessionStore = Depends(get_session_store)
):
    """
    Delete one stored chunk.

    Raises:
        - 404: Unknown session, file or chunk
    """
    session_id = body.session_id if body else None
    if not await store.delete_chunk(session_id, file_id, chunk_index):
        raise ChunkNotFoundError(f"Chunk {chunk_index} of file {file_id} not found")
    return SuccessResponse(success=True)


@router.get("/file/{file_id}/status", response_model=FileStatusResponse)
async def file_status(
    file_id: str,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    store: RelaySessionStore = Depends(get_session_store)
):
    """
    Upload and delivery state of a file.

    Raises:
        - 404: Unknown session or file
    """
    status = await store.file_status(session_id, file_id)
    return FileStatusResponse(
        file_name=status.file_name,
        file_size=status.file_size,
        total_chunks=status.total_chunks,
        uploaded_chunks=status.uploaded_chunks,
        downloaded_chunks=status.downloaded_chunks,
        completed=status.completed,
    )
