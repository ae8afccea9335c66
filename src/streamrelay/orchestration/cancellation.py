"""Request-scoped cancellation token with an explicit pause state."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, TypeVar

from .errors import CancellationError

__all__ = ["CancellationToken"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class CancellationToken:
    """Single signal scoping a top-level request and all of its rounds.

    Cancellation is terminal: every suspension point guarded by the token
    raises :class:`CancellationError` once :meth:`cancel` has been called.
    Pause is a distinct state that callers check explicitly; it halts chunk
    consumption without tearing down the underlying connection.
    """

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._paused = False
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled.is_set():
            return
        self._reason = reason
        self._cancelled.set()
        LOGGER.debug("Cancellation requested (reason=%s)", reason)

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise CancellationError(details={"reason": self._reason} if self._reason else {})

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it as soon as the token is cancelled."""
        if self._cancelled.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            LOGGER.debug("Abandoned awaitable failed after cancellation", exc_info=True)
        self.raise_if_cancelled()
        raise CancellationError()  # pragma: no cover - waiter only completes on cancel

    async def iterate(self, stream: AsyncIterator[T]) -> AsyncIterator[T]:
        """Yield items from *stream*, racing every fetch against cancellation."""
        iterator = stream.__aiter__()
        while True:
            item = await self.guard(_next_or_end(iterator))
            if item is _END:
                return
            yield item  # type: ignore[misc]


async def _next_or_end(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END
