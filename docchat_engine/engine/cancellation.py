"""One-shot cancellation tokens shared by every step of an exchange."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, TypeVar

from docchat_engine.engine.errors import ExchangeCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cancelled at most once; every suspension point of an exchange checks it."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stopped by user") -> bool:
        """Returns False when the token was already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExchangeCancelled(self.reason or "cancelled")

    async def iterate(self, source: AsyncIterable[T]) -> AsyncIterator[T]:
        """Pull items from *source*, racing each one against cancellation.

        The source is closed as soon as the token fires, even while a chunk
        is still being awaited.
        """
        iterator = source.__aiter__()
        waiter = asyncio.ensure_future(self._event.wait())
        pending: asyncio.Future | None = None
        try:
            while True:
                self.raise_if_cancelled()
                pending = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {pending, waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if pending not in done:
                    await _discard(pending)
                    raise ExchangeCancelled(self.reason or "cancelled")
                try:
                    item = pending.result()
                except StopAsyncIteration:
                    return
                yield item
        finally:
            waiter.cancel()
            # a pull still in flight keeps the source running; aclose would fail
            if pending is not None and not pending.done():
                await _discard(pending)
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as exc:
                    logger.debug("closing cancelled source failed: %s", exc)


async def _discard(pending: asyncio.Future) -> None:
    """Cancel an outstanding pull and wait for the source to unwind."""
    pending.cancel()
    try:
        await pending
    except (asyncio.CancelledError, StopAsyncIteration):
        pass
    except Exception as exc:
        logger.debug("source raised while being cancelled: %s", exc)


class CancellationController:
    """Hands out one token per user-initiated send."""

    def __init__(self) -> None:
        self._current: CancellationToken | None = None

    @property
    def current(self) -> CancellationToken | None:
        return self._current

    def begin(self) -> CancellationToken:
        self._current = CancellationToken()
        return self._current

    def stop(self, reason: str = "stopped by user") -> bool:
        """Cancel the in-flight exchange. False when nothing is running."""
        if self._current is None:
            return False
        return self._current.cancel(reason)

    def finish(self, token: CancellationToken) -> None:
        if self._current is token:
            self._current = None
