"""Chunk accumulator: folds a chunk stream into answer/thinking snapshots."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Callable

from docchat_engine.engine.cancellation import CancellationToken
from docchat_engine.engine.models import StreamChunk, ToolCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamSnapshot:
    """Materialised state of the trailing message after one chunk."""

    answer: str
    thinking: str | None
    thinking_started_at: float | None
    has_answer: bool


class ChunkAccumulator:
    """Accumulates answer text and thinking trace from ``StreamChunk``s.

    ``prefix`` is prepended to every answer snapshot, and ``base_thinking``
    seeds the trace. The reflection stream uses both to extend a message
    that already holds the tool marker and the primary stream's thinking.
    """

    def __init__(
        self,
        *,
        prefix: str = "",
        base_thinking: str | None = None,
        base_thinking_started_at: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._prefix = prefix
        self._base_thinking = base_thinking or ""
        self._base_started_at = base_thinking_started_at
        self._clock = clock

        self.answer_text = ""
        self.thinking_text = ""
        self.thinking_started_at: float | None = None
        self.tool_calls: list[ToolCall] = []
        self.last_chunk: StreamChunk | None = None
        self.chunk_count = 0
        self._answer_started = False

    # -- state ---------------------------------------------------------------

    @property
    def has_answer(self) -> bool:
        return self._answer_started

    def snapshot(self) -> StreamSnapshot:
        thinking = self._base_thinking + self.thinking_text
        return StreamSnapshot(
            answer=self._prefix + self.answer_text,
            thinking=thinking or None,
            thinking_started_at=self._base_started_at or self.thinking_started_at,
            has_answer=self._answer_started,
        )

    def feed(self, chunk: StreamChunk) -> StreamSnapshot | None:
        """Fold one chunk in. Returns a snapshot when answer or thinking changed."""
        self.last_chunk = chunk
        self.chunk_count += 1
        changed = False

        if chunk.thinking_delta:
            if self._answer_started:
                logger.debug("thinking delta after answer text; appending anyway")
            if self.thinking_started_at is None:
                self.thinking_started_at = self._clock()
            self.thinking_text += chunk.thinking_delta
            changed = True

        if chunk.answer_delta:
            if not self._answer_started:
                self.answer_text = chunk.answer_delta
                self._answer_started = True
            else:
                self.answer_text += chunk.answer_delta
            changed = True

        if chunk.tool_calls:
            self.tool_calls.extend(chunk.tool_calls)

        return self.snapshot() if changed else None

    # -- streaming -----------------------------------------------------------

    async def consume(
        self,
        stream: AsyncIterable[StreamChunk],
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamSnapshot]:
        """Feed every chunk of *stream* in arrival order, yielding snapshots.

        Raises ``ExchangeCancelled`` when *token* fires mid-stream. What was
        accumulated up to that point stays on the accumulator.
        """
        source = token.iterate(stream) if token is not None else stream
        try:
            async for chunk in source:
                snapshot = self.feed(chunk)
                if snapshot is not None:
                    yield snapshot
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.tool_calls:
            logger.info(
                "stream finished: chunks=%d tool_calls=%s",
                self.chunk_count, [tc.name for tc in self.tool_calls],
            )
