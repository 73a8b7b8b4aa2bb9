"""Sliding-window throughput governor shared by the relay server and peers."""

import asyncio
import math
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Hashable, Optional, Set, Tuple

from common.constants import (
    MAX_RATE_WAIT_MS,
    RATE_HORIZON_SECONDS,
    RATE_WINDOW_SECONDS,
)
from common.logging_config import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """
    Reactive rate limiter over a trailing window of (timestamp, bytes) samples.

    Each transfer is accounted first; when the bytes seen in the last
    second reach the cap, the caller is suspended so that *subsequent*
    transfers slow down. Callers waiting on the same key are released
    together when the first pending wait elapses.

    Keys give independent accounting units, e.g. one per peer. A cap of
    zero or less disables limiting.
    """

    def __init__(
        self,
        cap_bytes_per_second: int,
        name: str = "rate",
        window_seconds: float = RATE_WINDOW_SECONDS,
        horizon_seconds: float = RATE_HORIZON_SECONDS,
        max_wait_ms: int = MAX_RATE_WAIT_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.cap = cap_bytes_per_second
        self.name = name
        self.window_seconds = window_seconds
        self.horizon_seconds = horizon_seconds
        self.max_wait_ms = max_wait_ms
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[Hashable, Deque[Tuple[float, int]]] = {}
        self._last_sweep = clock()
        self._pending: Dict[Hashable, asyncio.Future] = {}
        self._release_tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.cap > 0

    def _prune(self, key: Hashable, now: float) -> Optional[Deque[Tuple[float, int]]]:
        window = self._windows.get(key)
        if window is None:
            return None
        while window and now - window[0][0] > self.window_seconds:
            window.popleft()
        if not window:
            del self._windows[key]
            return None
        return window

    def _sweep(self, now: float) -> None:
        """Drop every key whose samples have all left the window."""
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in list(self._windows):
            self._prune(key, now)

    def _rate_at(self, window: Deque[Tuple[float, int]], now: float) -> int:
        return sum(size for ts, size in window if now - ts < self.horizon_seconds)

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)

    def current_rate(self, key: Hashable = None) -> int:
        """Bytes accounted for key within the trailing horizon."""
        now = self._clock()
        window = self._prune(key, now)
        return self._rate_at(window, now) if window else 0

    def record(self, size: int, key: Hashable = None) -> float:
        """
        Account size bytes and compute how long the caller should pause.

        Args:
            size: Bytes just transferred or about to be transferred
            key: Accounting unit, None for the shared unit

        Returns:
            Wait in seconds, 0.0 when under the cap
        """
        if not self.enabled:
            return 0.0

        now = self._clock()
        self._sweep(now)
        window = self._prune(key, now)
        if window is None:
            window = self._windows[key] = deque()
        window.append((now, size))
        rate = self._rate_at(window, now)

        if rate < self.cap:
            return 0.0

        wait_ms = min(math.ceil((rate - self.cap) * 1000 / self.cap), self.max_wait_ms)
        if wait_ms > 0:
            logger.debug(
                f"Rate limit reached [limiter={self.name}] [key={key}] "
                f"rate={rate}B/s cap={self.cap}B/s wait={wait_ms}ms"
            )
        return wait_ms / 1000

    async def throttle(self, size: int, key: Hashable = None) -> float:
        """
        Account size bytes and suspend while the key is over its cap.

        Callers arriving while a wait for the same key is pending join that
        wait instead of starting their own.

        Returns:
            Seconds this caller was asked to wait
        """
        wait = self.record(size, key)
        if wait <= 0:
            return 0.0

        pending = self._pending.get(key)
        if pending is None or pending.done():
            pending = asyncio.get_running_loop().create_future()
            self._pending[key] = pending
            task = asyncio.create_task(self._release_after(key, pending, wait))
            self._release_tasks.add(task)
            task.add_done_callback(self._release_tasks.discard)

        await asyncio.shield(pending)
        return wait

    async def _release_after(self, key: Hashable, pending: asyncio.Future, wait: float) -> None:
        try:
            await self._sleep(wait)
        finally:
            if not pending.done():
                pending.set_result(None)
            if self._pending.get(key) is pending:
                del self._pending[key]

    def reset(self, key: Hashable = None) -> None:
        """Forget the samples of one accounting unit."""
        self._windows.pop(key, None)

    def forget_all(self) -> None:
        self._windows.clear()
