"""HTTP client for the relay server with queueing, rate limiting and retries."""

import asyncio
import math
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Set

import httpx

from common.constants import RELAY_STATUS_ONLINE
from common.exceptions import (
    ChunkNotYetUploadedError,
    PayloadMissingError,
    RelayException,
    RelayUnavailableError,
    SessionNotFoundError,
    exception_for_code,
)
from common.logging_config import get_logger
from common.rate_limiter import RateLimiter
from common.types import FileStatus, RelaySessionInfo, millis_from_iso
from peer.cancellation import ABORTED, CancellationToken
from peer.config import PeerConfig
from peer.transfer_queue import TransferQueue

logger = get_logger(__name__)


@dataclass
class UploadProgress:
    """Local view of how much of a file this peer has pushed to the relay."""
    total_chunks: int
    uploaded: Set[int] = field(default_factory=set)

    @property
    def progress(self) -> int:
        if not self.total_chunks:
            return 0
        return math.floor(len(self.uploaded) / self.total_chunks * 100)

    @property
    def completed(self) -> bool:
        return len(self.uploaded) >= self.total_chunks


class RelayClient:
    """
    Relay API client owned by one peer.

    Uploads and downloads go through separate TransferQueues so each
    direction is FIFO with its own concurrency cap. Uploads are charged to
    the upload limiter before they start; downloads are charged with the
    received size once the body arrives.
    """

    def __init__(
        self,
        config: PeerConfig,
        peer_id: str,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize relay client.

        Args:
            config: Peer configuration
            peer_id: Id this peer presents to the relay
            sleep: Coroutine used for backoff waits
        """
        self.config = config
        self.peer_id = peer_id
        self._sleep = sleep
        self.session = httpx.AsyncClient(
            base_url=config.get_base_url(),
            timeout=config.get_timeout()
        )
        self.session_id: Optional[str] = None
        self.session_info: Optional[RelaySessionInfo] = None
        self.request_id: Optional[str] = None
        self.uploads: Dict[str, UploadProgress] = {}

        max_concurrent = config.get('max_concurrent', 3)
        self.upload_limiter = RateLimiter(config.get('upload_rate_limit', 0), name="peer-upload", sleep=sleep)
        self.download_limiter = RateLimiter(config.get('download_rate_limit', 0), name="peer-download", sleep=sleep)
        self.upload_queue = TransferQueue("upload", max_concurrent, limiter=self.upload_limiter)
        self.download_queue = TransferQueue("download", max_concurrent)
        logger.info(f"Initialized RelayClient [base_url={config.get_base_url()}] [peer_id={peer_id}]")

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        max_retries: Optional[int] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic on 5xx errors and network failures.

        Args:
            method: HTTP method (GET, POST, DELETE)
            endpoint: API endpoint path
            max_retries: Max retry attempts (uses config default if None)
            **kwargs: Additional arguments to pass to httpx request

        Returns:
            HTTP response object, possibly a final 5xx

        Raises:
            RelayUnavailableError: If the relay cannot be reached after retries
        """
        retry_config = self.config.get_retry_config()
        max_retries = max_retries if max_retries is not None else retry_config['max_retries']
        backoff = retry_config['retry_backoff_multiplier']
        max_backoff = retry_config['max_backoff']

        self.request_id = str(uuid.uuid4())
        headers = dict(kwargs.pop('headers', None) or {})
        headers['X-Request-ID'] = self.request_id

        last_exception = None
        for attempt in range(max_retries + 1):
            delay = min(backoff ** attempt, max_backoff)
            try:
                response = await self.session.request(method, endpoint, headers=headers, **kwargs)

                # quota rejections are final
                retryable = response.status_code >= 500 and response.status_code != 507
                if retryable and attempt < max_retries:
                    logger.warning(
                        f"Server error (attempt {attempt + 1}/{max_retries + 1}): "
                        f"{method} {endpoint} status={response.status_code}, retrying in {delay}s [request_id={self.request_id}]"
                    )
                    await self._sleep(delay)
                    continue

                return response

            except (httpx.ConnectError, httpx.TimeoutException, httpx.TransportError) as e:
                last_exception = e
                if attempt < max_retries:
                    logger.warning(
                        f"Network error (attempt {attempt + 1}/{max_retries + 1}): "
                        f"{method} {endpoint} error={type(e).__name__}, retrying in {delay}s [request_id={self.request_id}]"
                    )
                    await self._sleep(delay)
                    continue
                logger.error(
                    f"Network error (max retries exceeded): {method} {endpoint} error={e} [request_id={self.request_id}]"
                )

        if isinstance(last_exception, httpx.TimeoutException):
            raise RelayUnavailableError("Request to relay timed out") from last_exception
        raise RelayUnavailableError("Cannot connect to relay server") from last_exception

    @staticmethod
    def _json_payload(response: httpx.Response) -> dict:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    def _raise_for_error(self, response: httpx.Response) -> None:
        """
        Map an error response to the matching exception.

        Raises:
            RelayException: Subclass selected by the response's error code
        """
        if response.status_code < 400:
            return
        payload = self._json_payload(response)
        detail = payload.get('detail') or f"Relay returned HTTP {response.status_code}"
        code = payload.get('code')
        if code is None and response.status_code >= 500:
            code = RelayUnavailableError.code
        raise exception_for_code(code, detail)

    def _require_session(self) -> str:
        if not self.session_id:
            raise SessionNotFoundError("No active relay session")
        return self.session_id

    async def check_server_connection(self) -> bool:
        """
        Check whether the relay answers its status endpoint as online.

        Returns:
            True if reachable, False otherwise
        """
        try:
            response = await self._request_with_retry("GET", "/relay/status", max_retries=0)
        except RelayUnavailableError:
            return False
        if response.status_code != 200:
            return False
        return self._json_payload(response).get('status') == RELAY_STATUS_ONLINE

    async def start_session(self) -> RelaySessionInfo:
        """
        Open a relay session, ending the one this client holds first.

        Returns:
            RelaySessionInfo of the new session
        """
        if self.session_id:
            await self.cleanup_session()

        response = await self._request_with_retry(
            "POST", "/relay/session/start", json={"peerId": self.peer_id}
        )
        self._raise_for_error(response)
        data = response.json()
        self.session_info = RelaySessionInfo(
            session_id=data['sessionId'],
            created_at=millis_from_iso(data['createdAt']),
            storage_used=data['storageUsed'],
            storage_limit=data['storageLimit'],
        )
        self.session_id = self.session_info.session_id
        logger.info(f"Relay session started [session_id={self.session_id}] [peer_id={self.peer_id}]")
        return self.session_info

    async def cleanup_session(self) -> bool:
        """
        Abort all queued work, forget local state and end the relay session.

        Best-effort: failures are logged, never raised.

        Returns:
            True if the relay confirmed the session was ended
        """
        self.abort_all_operations()
        session_id = self.session_id
        self.session_id = None
        self.session_info = None
        self.uploads.clear()

        if not session_id:
            return False

        try:
            response = await self._request_with_retry(
                "DELETE", f"/relay/session/{session_id}", max_retries=0
            )
        except RelayException as e:
            logger.warning(f"Session cleanup failed [session_id={session_id}]: {e}")
            return False

        if response.status_code != 200:
            logger.info(
                f"Session cleanup returned status={response.status_code} [session_id={session_id}]"
            )
            return False
        logger.info(f"Relay session ended [session_id={session_id}]")
        return True

    async def register_file(
        self,
        file_id: str,
        file_name: str,
        file_size: int,
        total_chunks: int
    ) -> None:
        """
        Register a file in the current session.

        Raises:
            SessionNotFoundError: If no session is active or the relay forgot it
            InvalidFileMetadataError: If the relay rejects the metadata
        """
        session_id = self._require_session()
        response = await self._request_with_retry(
            "POST",
            "/relay/file/register",
            json={
                "sessionId": session_id,
                "fileId": file_id,
                "fileName": file_name,
                "fileSize": file_size,
                "totalChunks": total_chunks,
            },
        )
        self._raise_for_error(response)
        self.uploads.setdefault(file_id, UploadProgress(total_chunks=total_chunks))
        logger.info(
            f"Registered file {file_id} chunks={total_chunks} [session_id={session_id}]"
        )

    async def upload_chunk(
        self,
        file_id: str,
        chunk_index: int,
        data: bytes,
        token: Optional[CancellationToken] = None
    ) -> bool:
        """
        Queue the upload of one chunk.

        Returns:
            True once stored, False if the upload was aborted

        Raises:
            RelayException: If the relay rejects the chunk
        """
        session_id = self._require_session()

        async def operation(op_token: CancellationToken) -> bool:
            response = await self._request_with_retry(
                "POST",
                f"/relay/file/{file_id}/chunk/{chunk_index}",
                files={"chunk": (f"chunk_{chunk_index}", data, "application/octet-stream")},
                data={"sessionId": session_id},
            )
            self._raise_for_error(response)
            progress = self.uploads.get(file_id)
            if progress is not None:
                progress.uploaded.add(chunk_index)
            return True

        result = await self.upload_queue.submit(
            operation, size=len(data), token=token, label=f"upload:{file_id}:{chunk_index}"
        )
        return result is True

    async def download_chunk(
        self,
        file_id: str,
        chunk_index: int,
        session_id: Optional[str] = None,
        find_across_sessions: bool = True,
        token: Optional[CancellationToken] = None
    ) -> Optional[bytes]:
        """
        Queue the download of one chunk, waiting for it if not uploaded yet.

        Args:
            file_id: File to read
            chunk_index: Chunk to read
            session_id: Session to address, defaults to this client's session
            find_across_sessions: Let the relay search other sessions for the file
            token: Optional per-transfer cancellation token

        Returns:
            Chunk bytes, or None if the download was aborted

        Raises:
            ChunkNotYetUploadedError: If the chunk never appeared within the configured wait attempts
            RelayException: For other relay errors
        """
        target_session = session_id or self._require_session()
        wait_config = self.config.get_chunk_wait_config()
        params = {
            "sessionId": target_session,
            "peerId": self.peer_id,
            "findAcrossSessions": "true" if find_across_sessions else "false",
        }

        async def operation(op_token: CancellationToken) -> bytes:
            delay = wait_config['initial_delay']
            for attempt in range(wait_config['max_attempts']):
                response = await self._request_with_retry(
                    "GET", f"/relay/file/{file_id}/chunk/{chunk_index}", params=params
                )
                waiting = (
                    response.status_code == 404
                    and self._json_payload(response).get('code') == ChunkNotYetUploadedError.code
                )
                if not waiting:
                    break
                if attempt + 1 < wait_config['max_attempts']:
                    logger.debug(
                        f"Chunk {chunk_index} of {file_id} not uploaded yet, retry in {delay:.2f}s "
                        f"(attempt {attempt + 1}/{wait_config['max_attempts']})"
                    )
                    await self._sleep(delay)
                    delay = min(delay * wait_config['backoff'], wait_config['max_delay'])
            else:
                raise ChunkNotYetUploadedError(
                    f"Chunk {chunk_index} of file {file_id} not available after "
                    f"{wait_config['max_attempts']} attempts"
                )

            self._raise_for_error(response)
            content = response.content
            if not content:
                raise PayloadMissingError(f"Empty chunk {chunk_index} received for file {file_id}")
            await self.download_limiter.throttle(len(content))
            return content

        result = await self.download_queue.submit(
            operation, token=token, label=f"download:{file_id}:{chunk_index}"
        )
        if result is ABORTED:
            return None
        return result

    async def delete_chunk(self, file_id: str, chunk_index: int) -> bool:
        """
        Delete one chunk from the current session. Best-effort.

        Returns:
            True if the relay deleted it
        """
        if not self.session_id:
            return False
        try:
            response = await self._request_with_retry(
                "DELETE",
                f"/relay/file/{file_id}/chunk/{chunk_index}",
                max_retries=0,
                json={"sessionId": self.session_id},
            )
        except RelayException as e:
            logger.warning(f"Chunk delete failed for {file_id}:{chunk_index}: {e}")
            return False
        return response.status_code == 200

    async def get_file_status(self, file_id: str, session_id: Optional[str] = None) -> FileStatus:
        """
        Fetch upload and delivery state of a file from the relay.

        Raises:
            SessionNotFoundError / FileNotFoundError: If unknown to the relay
        """
        target_session = session_id or self._require_session()
        response = await self._request_with_retry(
            "GET", f"/relay/file/{file_id}/status", params={"sessionId": target_session}
        )
        self._raise_for_error(response)
        data = response.json()
        return FileStatus(
            file_name=data['fileName'],
            file_size=data['fileSize'],
            total_chunks=data['totalChunks'],
            uploaded_chunks=list(data['uploadedChunks']),
            downloaded_chunks={k: list(v) for k, v in data.get('downloadedChunks', {}).items()},
        )

    async def sync_file_status(self, file_id: str, session_id: Optional[str] = None) -> bool:
        """
        Refresh the local upload view of a file from the relay.

        Returns:
            True if the relay holds every chunk of the file
        """
        status = await self.get_file_status(file_id, session_id)
        progress = self.uploads.setdefault(file_id, UploadProgress(total_chunks=status.total_chunks))
        progress.total_chunks = status.total_chunks
        progress.uploaded = set(status.uploaded_chunks)
        return status.completed

    def get_file_upload_status(self, file_id: str) -> Optional[UploadProgress]:
        return self.uploads.get(file_id)

    def abort_all_operations(self) -> None:
        """Drop queued transfers and cancel in-flight ones in both directions."""
        dropped = self.upload_queue.abort() + self.download_queue.abort()
        logger.info(f"Aborted relay operations dropped={dropped} [peer_id={self.peer_id}]")

    async def close(self) -> None:
        await self.upload_queue.close()
        await self.download_queue.close()
        await self.session.aclose()
