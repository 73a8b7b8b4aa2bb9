"""FIFO transfer queue with bounded concurrency and cooperative cancellation."""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Hashable, Optional, Set

from common.logging_config import get_logger
from common.rate_limiter import RateLimiter
from peer.cancellation import ABORTED, CancellationToken

logger = get_logger(__name__)

Operation = Callable[[CancellationToken], Awaitable[Any]]


@dataclass
class QueueTask:
    """A submitted operation waiting for its turn."""
    operation: Operation
    size: int
    token: CancellationToken
    future: asyncio.Future
    label: str = ""

    def resolve(self, result: Any) -> None:
        if not self.future.done():
            self.future.set_result(result)

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)


class TransferQueue:
    """
    Runs chunk operations in submission order with at most max_concurrent
    in flight.

    Each task goes through the same preflight before it may run:
    cancellation check, rate-limit wait for its size, cancellation check,
    then a wait for a free concurrency slot that also watches the token.
    Preflight is done one task at a time so start order equals submission
    order; execution itself overlaps up to the cap.

    abort() resolves everything still queued as ABORTED immediately,
    signals running operations through their token and installs a fresh
    token so the queue can be reused.
    """

    def __init__(
        self,
        name: str,
        max_concurrent: int = 3,
        limiter: Optional[RateLimiter] = None,
        rate_key: Hashable = None
    ):
        self.name = name
        self.max_concurrent = max_concurrent
        self.limiter = limiter
        self.rate_key = rate_key
        self._queue: Deque[QueueTask] = deque()
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._token = CancellationToken(name)
        self._pump_task: Optional[asyncio.Task] = None
        self._active: Set[asyncio.Task] = set()

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def active(self) -> int:
        return len(self._active)

    async def submit(
        self,
        operation: Operation,
        size: int = 0,
        token: Optional[CancellationToken] = None,
        label: str = ""
    ) -> Any:
        """
        Queue an operation and wait for its outcome.

        Args:
            operation: Coroutine function called with the task's token
            size: Bytes the operation will move, charged to the rate limiter
            token: Optional caller token; cancelling it aborts only this task
            label: Short description used in logs

        Returns:
            The operation's result, or ABORTED if cancelled before or during it

        Raises:
            Exception: Whatever the operation raised
        """
        combined = CancellationToken.any(self._token, token, name=f"{self.name}:{label}")
        if combined.cancelled:
            return ABORTED

        item = QueueTask(
            operation=operation,
            size=size,
            token=combined,
            future=asyncio.get_running_loop().create_future(),
            label=label,
        )
        self._queue.append(item)
        self._ensure_pump()
        return await item.future

    def _ensure_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while self._queue:
            item = self._queue.popleft()
            if item.future.done():
                continue
            try:
                await self._start(item)
            except Exception as e:
                logger.error(f"Queue preflight failed [queue={self.name}] [task={item.label}]: {e}")
                item.fail(e)

    async def _start(self, item: QueueTask) -> None:
        if item.token.cancelled:
            item.resolve(ABORTED)
            return

        if self.limiter is not None and item.size:
            waited = await item.token.run(self.limiter.throttle(item.size, self.rate_key))
            if waited is ABORTED:
                item.resolve(ABORTED)
                return

        if item.token.cancelled:
            item.resolve(ABORTED)
            return

        acquired = await item.token.run(self._semaphore.acquire())
        if acquired is ABORTED:
            item.resolve(ABORTED)
            return
        if item.token.cancelled or item.future.done():
            self._semaphore.release()
            item.resolve(ABORTED)
            return

        task = asyncio.create_task(self._execute(item))
        self._active.add(task)
        task.add_done_callback(self._active.discard)

    async def _execute(self, item: QueueTask) -> None:
        try:
            result = await item.token.run(item.operation(item.token))
            item.resolve(result)
        except Exception as e:
            logger.debug(f"Queued operation failed [queue={self.name}] [task={item.label}]: {e}")
            item.fail(e)
        finally:
            self._semaphore.release()

    def abort(self, reason: str = "aborted") -> int:
        """
        Drop every queued task and cancel running ones.

        Returns:
            Number of queued tasks resolved as ABORTED
        """
        dropped = 0
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.resolve(ABORTED)
                dropped += 1

        self._token.cancel(reason)
        self._token = CancellationToken(self.name)

        if dropped or self._active:
            logger.info(
                f"Aborted queue [queue={self.name}] dropped={dropped} in_flight={len(self._active)}"
            )
        return dropped

    async def close(self) -> None:
        """Abort and wait until in-flight operations have unwound."""
        self.abort("closed")
        if self._active:
            await asyncio.wait(set(self._active))
