"""Shared pytest fixtures for all tests."""

import asyncio

import httpx
import pytest

from common.rate_limiter import RateLimiter
from peer.config import PeerConfig
from peer.relay_client import RelayClient
from relay.byte_store import MemoryByteStore
from relay.main import create_app
from relay.session_store import RelaySessionStore


class FakeClock:
    """
    Synthetic monotonic clock whose sleep advances time instantly.

    Usage:
        clock = FakeClock()
        limiter = RateLimiter(1000, clock=clock, sleep=clock.sleep)
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def peer_config(tmp_path):
    """
    Peer configuration with limits disabled and short waits.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        PeerConfig pointing at the in-process relay
    """
    return PeerConfig(
        tmp_path / 'peer.json',
        relay_url='http://relay',
        upload_rate_limit=0,
        download_rate_limit=0,
        max_retries=2,
        chunk_wait_max_attempts=50,
        chunk_wait_initial_delay=0.01,
        chunk_wait_max_delay=0.05,
        recovery_attempts=3,
        recovery_delay=0.01,
        relay_chunk_size=1024,
    )


@pytest.fixture
def relay_store():
    """Session store backed by memory with a 1 MiB quota per session."""
    return RelaySessionStore(byte_store=MemoryByteStore(), storage_limit_bytes=1024 * 1024)


@pytest.fixture
def relay_app(relay_store):
    """Relay application without server-side rate limiting."""
    return create_app(
        session_store=relay_store,
        upload_limiter=RateLimiter(0),
        download_limiter=RateLimiter(0),
    )


@pytest.fixture
def make_relay_client(peer_config, relay_app):
    """
    Factory for RelayClients talking to relay_app in-process.

    Returns:
        Callable taking a peer id and an optional sleep coroutine
    """
    def _make(peer_id: str, sleep=None, config=None) -> RelayClient:
        client = RelayClient(config or peer_config, peer_id, sleep=sleep or asyncio.sleep)
        client.session = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=relay_app),
            base_url='http://relay'
        )
        return client

    return _make
