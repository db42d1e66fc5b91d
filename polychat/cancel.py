"""Cooperative cancellation shared by a discussion run and its upstream requests."""

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DiscussionCancelled(Exception):
    """Raised when an awaited upstream operation is cut short by an aborted signal."""


async def _next_item(iterator: AsyncIterator[T]) -> T:
    return await iterator.__anext__()


class CancelSignal:
    """One-shot abort flag that can also interrupt an in-flight await.

    A single signal is threaded through a whole run. The boundary layer
    calls ``abort()`` when its client goes away; the streaming client
    guards every suspension point with it so the upstream request stops
    immediately rather than at the next chunk.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list["CancelSignal"] = []
        self._parent: "CancelSignal | None" = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        if self._event.is_set():
            return
        logger.debug("Cancel signal aborted")
        self._event.set()
        children, self._children = self._children, []
        for child in children:
            child.abort()
        # Detach from the parent once aborted
        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)
        self._parent = None

    def child(self) -> "CancelSignal":
        """Return a signal that aborts on its own or whenever this one does."""
        sub = CancelSignal()
        if self.aborted:
            sub.abort()
        else:
            sub._parent = self
            self._children.append(sub)
        return sub

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first.

        Raises:
            DiscussionCancelled: If the signal is (or becomes) aborted; the
                pending awaitable is cancelled before raising.
        """
        if self.aborted:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DiscussionCancelled("Request aborted")

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
            raise DiscussionCancelled("Request aborted")
        return task.result()

    async def iterate(self, source: AsyncIterable[T]) -> AsyncIterator[T]:
        """Yield items from ``source``, racing every read against the signal."""
        iterator = source.__aiter__()
        while True:
            try:
                item = await self.guard(_next_item(iterator))
            except StopAsyncIteration:
                return
            yield item
