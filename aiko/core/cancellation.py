"""
aiko.core.cancellation - Cooperative cancellation token.

One token per generation job. Producers call ``raise_if_cancelled()`` at
their suspension points (before a network read, before a frame, before a
staged delay); ``sleep()`` and ``race()`` wake up as soon as the token is
cancelled instead of waiting out the delay or the pending read.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from aiko.core.errors import GenerationCancelled

logger = logging.getLogger("aiko.cancellation")

T = TypeVar("T")


class CancellationToken:
    """A one-shot, explicit cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug("Token cancelled: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for *seconds* unless cancelled first, in which case raise."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise GenerationCancelled(self.reason)

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it if the token is cancelled meanwhile."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise GenerationCancelled(self.reason)
        return task.result()
