"""Request-scoped access to the components owned by the relay app."""

from fastapi import Request

from common.rate_limiter import RateLimiter
from relay.session_store import RelaySessionStore


def get_session_store(request: Request) -> RelaySessionStore:
    """Session store injected into route handlers."""
    return request.app.state.session_store


def get_upload_limiter(request: Request) -> RateLimiter:
    """Per-peer limiter applied to incoming chunk bytes."""
    return request.app.state.upload_limiter


def get_download_limiter(request: Request) -> RateLimiter:
    """Per-peer limiter applied to outgoing chunk bytes."""
    return request.app.state.download_limiter
