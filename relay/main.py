"""Entry point for the relay server."""

import time
import uuid
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from common.exceptions import (
    ChunkNotYetUploadedError,
    RelayException,
)
from common.logging_config import setup_logging
from common.rate_limiter import RateLimiter
from relay.byte_store import create_byte_store
from relay.config import (
    RELAY_DOWNLOAD_RATE_LIMIT,
    RELAY_HOST,
    RELAY_PORT,
    RELAY_STORAGE_BACKEND,
    RELAY_STORAGE_LIMIT_BYTES,
    RELAY_STORAGE_PATH,
    RELAY_UPLOAD_RATE_LIMIT,
)
from relay.routes import relay_router
from relay.schemas import ErrorResponse
from relay.session_store import RelaySessionStore

logger = setup_logging('relay')


def create_app(
    session_store: Optional[RelaySessionStore] = None,
    upload_limiter: Optional[RateLimiter] = None,
    download_limiter: Optional[RateLimiter] = None
) -> FastAPI:
    """
    Build the relay application around an explicit session store.

    Args:
        session_store: Store to serve; built from configuration when None
        upload_limiter: Per-peer limiter for incoming chunks
        download_limiter: Per-peer limiter for outgoing chunks

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Relay Transfer Server",
        description="Chunked file relay for peers without a usable direct channel",
        version="1.0.0"
    )

    if session_store is None:
        session_store = RelaySessionStore(
            byte_store=create_byte_store(RELAY_STORAGE_BACKEND, RELAY_STORAGE_PATH),
            storage_limit_bytes=RELAY_STORAGE_LIMIT_BYTES,
        )
    app.state.session_store = session_store
    app.state.upload_limiter = upload_limiter or RateLimiter(RELAY_UPLOAD_RATE_LIMIT, name="relay-upload")
    app.state.download_limiter = download_limiter or RateLimiter(RELAY_DOWNLOAD_RATE_LIMIT, name="relay-download")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Middleware to log all HTTP requests and responses.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()

        logger.info(
            f"Request started: {request.method} {request.url.path} [request_id={request_id}]"
        )

        response = await call_next(request)

        duration = time.time() - start_time

        logger.info(
            f"Request completed: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s [request_id={request_id}]"
        )

        response.headers["X-Request-ID"] = request_id

        return response

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            f"Relay server starting up [storage={RELAY_STORAGE_BACKEND}] "
            f"[limit={session_store.storage_limit_bytes}]"
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        """
        Drain every session on application shutdown.
        """
        logger.info("Relay server shutting down...")
        drained = await session_store.shutdown()
        logger.info(f"Released {drained} session(s)")

    @app.exception_handler(ChunkNotYetUploadedError)
    async def chunk_not_yet_uploaded_handler(request: Request, exc: ChunkNotYetUploadedError):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.debug(
            f"Chunk not yet uploaded: {exc} [request_id={request_id}] path={request.url.path}"
        )
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=ErrorResponse(detail=str(exc), code=exc.code, waiting=True).model_dump()
        )

    @app.exception_handler(RelayException)
    async def relay_exception_handler(request: Request, exc: RelayException):
        request_id = getattr(request.state, 'request_id', 'unknown')
        if exc.status_code >= 500:
            logger.error(
                f"Relay exception: {exc} [request_id={request_id}] path={request.url.path}",
                exc_info=True
            )
        else:
            logger.warning(
                f"{type(exc).__name__}: {exc} [request_id={request_id}] path={request.url.path}"
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(detail=str(exc), code=exc.code).model_dump(exclude_none=True)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.warning(
            f"Invalid request: {exc.errors()} [request_id={request_id}] path={request.url.path}"
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(
                detail="Invalid request parameters", code="INVALID_REQUEST"
            ).model_dump(exclude_none=True)
        )

    app.include_router(relay_router)

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for container healthchecks.
        """
        return {"status": "healthy", "service": "relay"}

    return app


app = create_app()


def main() -> None:
    """
    Start the FastAPI server with uvicorn.
    """
    uvicorn.run(
        "relay.main:app",
        host=RELAY_HOST,
        port=RELAY_PORT
    )


if __name__ == "__main__":
    main()
