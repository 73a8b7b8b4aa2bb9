"""Cooperative cancellation tokens passed into queued transfer operations."""

import asyncio
import weakref
from typing import Awaitable, Optional, TypeVar, Union

from common.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class _Aborted:
    """Falsy marker resolved by operations that observed cancellation."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABORTED"


ABORTED = _Aborted()


class CancellationToken:
    """
    One-shot cancellation signal.

    Children are cancelled with their parent but never the other way
    round, so a per-transfer token can be derived from a queue-wide one.
    """

    def __init__(self, name: str = "token"):
        self.name = name
        self.reason: Optional[str] = None
        self._event = asyncio.Event()
        self._children: "weakref.WeakSet[CancellationToken]" = weakref.WeakSet()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        """Raise the signal. Cancelling twice keeps the first reason."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug(f"Cancelled [token={self.name}] reason={reason}")
        for child in list(self._children):
            child.cancel(reason)

    async def wait(self) -> None:
        await self._event.wait()

    def child(self, name: Optional[str] = None) -> "CancellationToken":
        """Token cancelled whenever this one is."""
        token = CancellationToken(name or f"{self.name}.child")
        self._link(token)
        return token

    def _link(self, token: "CancellationToken") -> None:
        if self.cancelled:
            token.cancel(self.reason)
        else:
            self._children.add(token)

    @classmethod
    def any(cls, *tokens: Optional["CancellationToken"], name: str = "any") -> "CancellationToken":
        """Token cancelled as soon as any of the given tokens is."""
        combined = cls(name)
        for token in tokens:
            if token is not None:
                token._link(combined)
        return combined

    async def run(self, awaitable: Awaitable[T]) -> Union[T, _Aborted]:
        """
        Await awaitable unless the token fires first.

        On cancellation the inner task is cancelled and ABORTED returned.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return ABORTED

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if not task.cancelled() and task.done():
            return task.result()

        outcome = await asyncio.gather(task, return_exceptions=True)
        logger.debug(f"Operation aborted [token={self.name}] outcome={type(outcome[0]).__name__}")
        return ABORTED
