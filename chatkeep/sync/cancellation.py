"""Cooperative cancellation shared by sync loops and attachment downloads."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from ..errors import SyncCancelled

T = TypeVar("T")


class CancellationToken:
    """A shared cancellation signal, polled at loop boundaries.

    ``run`` additionally races an awaitable against the signal so a long
    sleep or download is abandoned as soon as cancellation is requested.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelled(self.reason or "Sync cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancellation fires first.

        Raises:
            SyncCancelled: if the token fires before the awaitable finishes;
                the awaitable is cancelled.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
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
        raise SyncCancelled(self.reason or "Sync cancelled")

    async def sleep(self, seconds: float) -> None:
        await self.run(asyncio.sleep(seconds))


__all__ = ["CancellationToken"]
