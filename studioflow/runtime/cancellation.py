"""
Cancellation tokens for in-flight generations.

A token is created per generation and passed down the call chain. Whoever
holds it can ``cancel()``; the generation notices either at its next
``raise_if_cancelled()`` or immediately when it is awaiting through
``guard()``.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationSignal(Exception):
    """Raised when a cancellation token fires; resets the node without an error."""


class CancellationToken:
    """One-shot cancellation flag backed by an ``asyncio.Event``."""

    def __init__(self, label: str = ""):
        self.label = label
        self._event = asyncio.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info(f"Cancellation requested for {self.label or 'token'}")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationSignal(self.label)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        When cancellation wins, the inner task is cancelled and awaited before
        ``CancellationSignal`` is raised, so no work outlives the call.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise CancellationSignal(self.label)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            # Drain the inner task before the outer cancellation propagates
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise CancellationSignal(self.label)
