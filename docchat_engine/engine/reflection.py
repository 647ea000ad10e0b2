"""Reflection: a second stream that narrates an edit the assistant just made."""

from __future__ import annotations

import logging
from typing import AsyncIterator

from docchat_engine.engine.accumulator import ChunkAccumulator, StreamSnapshot
from docchat_engine.engine.cancellation import CancellationToken
from docchat_engine.engine.llm import LLMClient
from docchat_engine.engine.locator import MatchStage
from docchat_engine.engine.models import Message, ReflectionRequest, Role
from docchat_engine.engine.resolver import EditInstruction, FullReplace, PartialReplace
from docchat_engine.prompts import TOOL_PLACEHOLDER_ANSWER

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 300


def describe_edit(instruction: EditInstruction, stage: MatchStage | None = None) -> str:
    """Short structured description of an applied edit for the backend."""
    if isinstance(instruction, FullReplace):
        return (
            "Edit kind: full document replacement\n"
            f"New document length: {len(instruction.html)} characters"
        )
    if isinstance(instruction, PartialReplace):
        lines = [
            "Edit kind: partial replacement",
            f"Replaced snippet: {instruction.snippet[:_PREVIEW_CHARS]}",
            f"Replacement: {instruction.replacement[:_PREVIEW_CHARS] or '(deleted)'}",
        ]
        if stage is not None:
            lines.append(f"Located by: {stage.value} match")
        return "\n".join(lines)
    raise ValueError(f"not an applied edit: {instruction!r}")


class ReflectionOrchestrator:
    """Builds the reflection request and streams narration after the marker."""

    def __init__(self, llm_client: LLMClient) -> None:
        self._llm = llm_client

    def build_request(
        self,
        history: list[Message],
        prompt: str,
        answer_text: str,
        tool_result: str,
        model: str,
    ) -> ReflectionRequest:
        conversation = [
            *history,
            Message(role=Role.USER, content=prompt),
            Message(role=Role.ASSISTANT, content=answer_text.strip() or TOOL_PLACEHOLDER_ANSWER),
        ]
        return ReflectionRequest(history=conversation, tool_result=tool_result, model=model)

    async def narrate(
        self,
        request: ReflectionRequest,
        message: Message,
        token: CancellationToken,
    ) -> AsyncIterator[StreamSnapshot]:
        """Yield snapshots of *message* with narration appended to its content.

        Thinking from the reflection stream is appended to the message's
        existing thinking trace.
        """
        accumulator = ChunkAccumulator(
            prefix=message.content,
            base_thinking=message.thinking,
            base_thinking_started_at=message.thinking_started_at,
        )
        token.raise_if_cancelled()
        stream = self._llm.stream_reflection(request, token)
        async for snapshot in accumulator.consume(stream, token):
            yield snapshot
        logger.info("reflection finished: %d chars", len(accumulator.answer_text))
