"""LLM client: streaming ABC, OpenAI implementation, and mocks."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Union

from docchat_engine.engine.cancellation import CancellationToken
from docchat_engine.engine.errors import BackendUnavailable
from docchat_engine.engine.models import (
    ChatRequest,
    Message,
    ReflectionRequest,
    Role,
    StreamChunk,
    ToolCall,
)
from docchat_engine.prompts import (
    REFLECTION_SYSTEM_INSTRUCTION,
    append_document_html,
    chat_system_instruction,
    reflection_user_prompt,
    user_prompt,
)
from docchat_engine.tools.edit_document import EDIT_DOCUMENT, default_registry
from docchat_engine.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class LLMClient(ABC):
    """Backend stream contract.

    Both methods return an async iterator of ``StreamChunk`` ending with a
    chunk flagged ``is_final``. That final chunk may carry tool calls.
    """

    @abstractmethod
    def stream_chat(
        self,
        request: ChatRequest,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]: ...

    @abstractmethod
    def stream_reflection(
        self,
        request: ReflectionRequest,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]: ...


def _history_messages(history: list[Message]) -> list[dict[str, Any]]:
    return [
        {"role": m.role.value, "content": m.content}
        for m in history
        if m.role != Role.SYSTEM and m.content.strip()
    ]


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------

class OpenAILLMClient(LLMClient):
    """Streams chat completions, exposing ``edit_document`` as a function tool.

    Reasoning text is read from ``reasoning_content`` / ``reasoning`` deltas,
    which OpenAI-compatible servers emit for thinking models.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        tool_registry: ToolRegistry | None = None,
    ) -> None:
        # Late import so the rest of the package works without openai installed
        from openai import AsyncOpenAI

        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._model = model
        self._tools = tool_registry or default_registry()

    def build_chat_messages(self, request: ChatRequest) -> list[dict[str, Any]]:
        system = append_document_html(
            chat_system_instruction(request.source_documents),
            request.document_html,
        )
        return [
            {"role": "system", "content": system},
            *_history_messages(request.history),
            {"role": "user", "content": user_prompt(request.user_message, request.selection)},
        ]

    async def stream_chat(
        self,
        request: ChatRequest,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        kwargs: dict[str, Any] = {
            "model": request.model or self._model,
            "messages": self.build_chat_messages(request),
            "tools": self._tools.openai_schemas([EDIT_DOCUMENT]),
        }
        if request.options.temperature is not None:
            kwargs["temperature"] = request.options.temperature
        if request.options.max_output_tokens is not None:
            kwargs["max_tokens"] = request.options.max_output_tokens

        async for chunk in self._stream(kwargs, request.options.include_thoughts, token):
            yield chunk

    async def stream_reflection(
        self,
        request: ReflectionRequest,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        kwargs: dict[str, Any] = {
            "model": request.model or self._model,
            "messages": [
                {"role": "system", "content": REFLECTION_SYSTEM_INSTRUCTION},
                *_history_messages(request.history),
                {"role": "user", "content": reflection_user_prompt(request.tool_result)},
            ],
        }
        async for chunk in self._stream(kwargs, True, token):
            yield chunk

    async def _stream(
        self,
        kwargs: dict[str, Any],
        include_thoughts: bool,
        token: CancellationToken | None,
    ) -> AsyncIterator[StreamChunk]:
        from openai import APIError

        if token is not None:
            token.raise_if_cancelled()

        fragments: dict[int, dict[str, str]] = {}
        try:
            stream = await self._client.chat.completions.create(stream=True, **kwargs)
        except APIError as exc:
            raise BackendUnavailable(f"{type(exc).__name__}: {exc}") from exc

        try:
            async for event in stream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta
                thinking = None
                if include_thoughts:
                    thinking = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
                for fragment in delta.tool_calls or []:
                    slot = fragments.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                    if fragment.id:
                        slot["id"] = fragment.id
                    if fragment.function is not None:
                        if fragment.function.name:
                            slot["name"] = fragment.function.name
                        if fragment.function.arguments:
                            slot["arguments"] += fragment.function.arguments
                if delta.content or thinking:
                    yield StreamChunk(answer_delta=delta.content or None, thinking_delta=thinking or None)
        except APIError as exc:
            raise BackendUnavailable(f"{type(exc).__name__}: {exc}") from exc
        finally:
            await stream.close()

        tool_calls = [_parse_tool_call(fragments[i]) for i in sorted(fragments)]
        yield StreamChunk(tool_calls=tool_calls or None, is_final=True)


def _parse_tool_call(fragment: dict[str, str]) -> ToolCall:
    try:
        args = json.loads(fragment["arguments"] or "{}")
    except json.JSONDecodeError:
        logger.warning("tool call %s carried invalid JSON arguments", fragment["name"])
        args = {}
    if not isinstance(args, dict):
        args = {}
    return ToolCall(id=fragment["id"] or None, name=fragment["name"], args=args)


# ---------------------------------------------------------------------------
# Test mock: deterministic, pre-loaded streams
# ---------------------------------------------------------------------------

HOLD = object()
"""Script item that blocks the stream until it is cancelled."""

ScriptItem = Union[StreamChunk, BaseException, object]


class MockLLMClient(LLMClient):
    """Plays pre-configured scripts in order, one per stream call.

    A script is a list of ``StreamChunk``s. An exception in the list is
    raised at that point, and ``HOLD`` blocks until the consumer cancels.
    Primary and reflection calls share the same queue. Used in unit tests.
    """

    def __init__(self, scripts: list[list[ScriptItem]], chunk_delay: float = 0.0) -> None:
        self._scripts = [list(s) for s in scripts]
        self._delay = chunk_delay
        self._call_index = 0
        self.requests: list[ChatRequest | ReflectionRequest] = []
        self.closed_streams = 0

    @property
    def call_count(self) -> int:
        return self._call_index

    def stream_chat(self, request: ChatRequest, token: CancellationToken | None = None) -> AsyncIterator[StreamChunk]:
        return self._play(request)

    def stream_reflection(
        self, request: ReflectionRequest, token: CancellationToken | None = None
    ) -> AsyncIterator[StreamChunk]:
        return self._play(request)

    async def _play(self, request: ChatRequest | ReflectionRequest) -> AsyncIterator[StreamChunk]:
        self.requests.append(request)
        if self._call_index >= len(self._scripts):
            self._call_index += 1
            yield StreamChunk(answer_delta="[mock responses exhausted]", is_final=True)
            return
        script = self._scripts[self._call_index]
        self._call_index += 1
        try:
            for item in script:
                if self._delay:
                    await asyncio.sleep(self._delay)
                if item is HOLD:
                    await asyncio.Event().wait()
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
        finally:
            self.closed_streams += 1


# ---------------------------------------------------------------------------
# Demo mock: context-aware, for running without an API key
# ---------------------------------------------------------------------------

_REPLACE_COMMAND = re.compile(r"replace\s+[\"'](.+?)[\"']\s+with\s+[\"'](.*?)[\"']", re.IGNORECASE | re.DOTALL)


class DemoMockLLMClient(LLMClient):
    """Demonstrates streaming, tool calls and reflection without a real LLM.

    Behaviour:
    1. ``replace "X" with "Y"`` → partial edit of X into Y.
    2. ``rewrite: ...`` → full replacement with the text as one paragraph.
    3. Otherwise → a short streamed answer about the document.
    """

    async def stream_chat(
        self, request: ChatRequest, token: CancellationToken | None = None
    ) -> AsyncIterator[StreamChunk]:
        yield StreamChunk(thinking_delta="Reading the document and the request. ")
        text = request.user_message.strip()

        command = _REPLACE_COMMAND.search(text)
        if command:
            yield StreamChunk(answer_delta="Applying the requested replacement.")
            yield StreamChunk(
                is_final=True,
                tool_calls=[ToolCall(id="demo-tc-1", name=EDIT_DOCUMENT, args={
                    "html_snippet_to_replace": command.group(1),
                    "replacement_html": command.group(2),
                })],
            )
            return

        if text.lower().startswith("rewrite:"):
            body = text.split(":", 1)[1].strip()
            yield StreamChunk(
                is_final=True,
                tool_calls=[ToolCall(id="demo-tc-1", name=EDIT_DOCUMENT, args={
                    "full_document_html": f"<p>{body}</p>",
                })],
            )
            return

        answer = (
            f"The document currently holds {len(request.document_html)} characters of HTML. "
            "This is a demo response. Set OPENAI_API_KEY for real LLM output."
        )
        words = answer.split(" ")
        for i, word in enumerate(words):
            yield StreamChunk(answer_delta=word if i == len(words) - 1 else word + " ")
        yield StreamChunk(is_final=True)

    async def stream_reflection(
        self, request: ReflectionRequest, token: CancellationToken | None = None
    ) -> AsyncIterator[StreamChunk]:
        first_line = request.tool_result.splitlines()[0] if request.tool_result else "edit"
        yield StreamChunk(answer_delta=f"Done: {first_line.lower()}.")
        yield StreamChunk(is_final=True)
