"""DocChatEngine: the streaming conversation and document-edit runtime."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator

from docchat_engine.engine.accumulator import ChunkAccumulator
from docchat_engine.engine.conversation import (
    ConversationHistory,
    Exchange,
    ExchangeState,
    backend_view,
)
from docchat_engine.engine.errors import (
    ErrorKind,
    ExchangeCancelled,
    HistoryOperationError,
    classify_error,
)
from docchat_engine.engine.ledger import INITIAL_GENERATION, MANUAL_SAVE
from docchat_engine.engine.llm import LLMClient
from docchat_engine.engine.locator import NotFound, PatchLocator
from docchat_engine.engine.models import (
    ChatRequest,
    DocumentVersion,
    EngineEvent,
    EngineEventType,
    EngineSettings,
    Message,
    Role,
    TurnStatus,
)
from docchat_engine.engine.reflection import ReflectionOrchestrator, describe_edit
from docchat_engine.engine.resolver import FullReplace, Malformed, NoEdit, resolve_edit
from docchat_engine.engine.session import AuthoringSession
from docchat_engine.prompts import APOLOGY_MESSAGE, EDIT_NOT_LOCATED_MESSAGE, tool_usage_marker
from docchat_engine.tools.edit_document import EDIT_DOCUMENT, default_registry
from docchat_engine.tools.registry import ToolRegistry
from docchat_engine.tracing.interface import NullTraceCollector, TraceCollector

logger = logging.getLogger(__name__)


class DocChatEngine:
    """Public API: ``async for event in engine.send_message(session, text): ...``

    Message-producing operations are async generators of ``EngineEvent``.
    Ledger operations are plain calls. All state lives on the
    ``AuthoringSession`` passed in.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        trace_collector: TraceCollector | None = None,
        settings: EngineSettings | None = None,
        tool_registry: ToolRegistry | None = None,
        locator: PatchLocator | None = None,
    ) -> None:
        self._llm = llm_client
        self._trace = trace_collector or NullTraceCollector()
        self._settings = settings or EngineSettings()
        self._tools = tool_registry or default_registry()
        self._locator = locator or PatchLocator(
            anchor_length=self._settings.anchor_length,
            relaxed_search_limit=self._settings.relaxed_search_limit,
        )
        self._reflection = ReflectionOrchestrator(llm_client)

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Conversation events
    # ------------------------------------------------------------------

    async def send_message(
        self, session: AuthoringSession, text: str | None = None
    ) -> AsyncIterator[EngineEvent]:
        """Send *text*, or the session's pending input when omitted."""
        prompt = text if text is not None else session.pending_input
        if not prompt.strip():
            return
        if session.is_loading:
            yield self._rejected("an exchange is already in flight")
            return
        session.pending_input = ""
        async with aclosing(self._run_exchange(session, prompt, session.history.messages)) as events:
            async for event in events:
                yield event

    async def edit_message(
        self, session: AuthoringSession, index: int, text: str
    ) -> AsyncIterator[EngineEvent]:
        """Replace the user turn at *index* and everything after it."""
        try:
            context = session.history.context_before(index, Role.USER)
        except HistoryOperationError as exc:
            yield self._rejected(str(exc))
            return
        async with aclosing(self._run_exchange(session, text, context)) as events:
            async for event in events:
                yield event

    async def retry_user_message(
        self, session: AuthoringSession, index: int
    ) -> AsyncIterator[EngineEvent]:
        try:
            context = session.history.context_before(index, Role.USER)
        except HistoryOperationError as exc:
            yield self._rejected(str(exc))
            return
        prompt = session.history[index].content
        async with aclosing(self._run_exchange(session, prompt, context)) as events:
            async for event in events:
                yield event

    async def retry_assistant_message(
        self, session: AuthoringSession, index: int
    ) -> AsyncIterator[EngineEvent]:
        """Regenerate the reply at *index* from the user turn that prompted it."""
        try:
            user_index = session.history.prompting_user_index(index)
        except HistoryOperationError as exc:
            yield self._rejected(str(exc))
            return
        if user_index is None:
            return
        prompt = session.history[user_index].content
        context = session.history.messages[:user_index]
        async with aclosing(self._run_exchange(session, prompt, context)) as events:
            async for event in events:
                yield event

    def stop(self, session: AuthoringSession) -> bool:
        stopped = session.cancellation.stop()
        if stopped:
            logger.info("session %s: stop requested", session.session_id)
        return stopped

    def reset(self, session: AuthoringSession) -> None:
        """Clear the conversation and pending input. The ledger is untouched."""
        session.cancellation.stop("conversation reset")
        session.history.reset()
        session.pending_input = ""

    # ------------------------------------------------------------------
    # Version ledger events
    # ------------------------------------------------------------------

    def load_generated_document(self, session: AuthoringSession, html: str) -> DocumentVersion:
        return session.ledger.commit(html, INITIAL_GENERATION)

    def mark_document_dirty(self, session: AuthoringSession) -> None:
        """The editor holds changes that are not saved as a version yet."""
        session.ledger.mark_dirty()

    def save_version(
        self, session: AuthoringSession, content: str, reason: str = MANUAL_SAVE
    ) -> DocumentVersion | None:
        """``None`` means there was nothing to save."""
        return session.ledger.save(content, reason)

    def preview_version(self, session: AuthoringSession, version_id: str) -> DocumentVersion | None:
        return session.ledger.preview(version_id)

    def exit_preview(self, session: AuthoringSession) -> None:
        session.ledger.exit_preview()

    def revert_version(self, session: AuthoringSession, version_id: str) -> DocumentVersion | None:
        return session.ledger.revert(version_id)

    def delete_version(self, session: AuthoringSession, version_id: str) -> bool:
        return session.ledger.delete(version_id)

    def snapshot(self, session: AuthoringSession) -> dict[str, Any]:
        """Observable state for a UI."""
        ledger = session.ledger
        return {
            "session_id": session.session_id,
            "messages": [m.model_dump(mode="json") for m in session.history.messages],
            "is_loading": session.is_loading,
            "is_streaming": session.is_streaming,
            "pending_input": session.pending_input,
            "document": ledger.displayed_content,
            "dirty": ledger.dirty,
            "current_version_id": ledger.current_id,
            "preview_version_id": ledger.preview_id,
            "versions": [
                {"id": v.id, "timestamp": v.timestamp, "reason": v.reason}
                for v in ledger.versions
            ],
        }

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def _run_exchange(
        self,
        session: AuthoringSession,
        prompt: str,
        context: list[Message],
    ) -> AsyncIterator[EngineEvent]:
        if not prompt.strip():
            yield self._rejected("message is empty")
            return
        if session.is_loading:
            yield self._rejected("an exchange is already in flight")
            return

        history = session.history
        ledger = session.ledger
        settings = self._settings
        model = session.model or settings.model

        exchange = Exchange(prompt=prompt)
        token = session.cancellation.begin()
        prior = backend_view(context, settings.max_history_turns, settings.max_history_tokens)
        history.begin_turn(context, prompt)
        session.is_loading = True
        session.is_streaming = True
        t_start = time.time()
        committed = False

        await self._trace.emit(exchange.id, "exchange_start", {
            "session_id": session.session_id,
            "prompt_chars": len(prompt),
            "context_messages": len(context),
            "backend_messages": len(prior),
        })
        yield self._event(EngineEventType.STARTED, exchange, {
            "prompt": prompt,
            "user_index": len(history) - 2,
        })

        try:
            # 1. Primary stream ------------------------------------------
            exchange.advance(ExchangeState.AWAITING_ANSWER)
            request = ChatRequest(
                history=prior,
                user_message=prompt,
                document_html=ledger.content,
                selection=session.selection,
                source_documents=session.source_documents,
                model=model,
                options=settings.generation,
            )
            accumulator = ChunkAccumulator()
            t_llm = time.time()
            primary = accumulator.consume(self._llm.stream_chat(request, token), token)
            async with aclosing(primary) as snapshots:
                async for snapshot in snapshots:
                    message = history.update_placeholder(
                        snapshot.answer if snapshot.has_answer else None,
                        snapshot.thinking,
                        snapshot.thinking_started_at,
                    )
                    if message is not None:
                        yield self._message_event(EngineEventType.MESSAGE, exchange, history, message)
            token.raise_if_cancelled()

            await self._trace.emit(exchange.id, "llm_stream", {
                "latency_ms": round((time.time() - t_llm) * 1000, 2),
                "chunks": accumulator.chunk_count,
                "answer_chars": len(accumulator.answer_text),
                "thinking_chars": len(accumulator.thinking_text),
                "tool_calls": [tc.name for tc in accumulator.tool_calls],
            })

            if accumulator.last_chunk is None:
                logger.info("exchange %s: backend returned no chunks", exchange.id)
                history.remove_placeholder()
                exchange.advance(ExchangeState.SETTLED)
                yield self._event(EngineEventType.FINAL, exchange, {"message": None})
                return

            # 2. Tool call -----------------------------------------------
            instruction = resolve_edit(accumulator.tool_calls, self._tools)
            if isinstance(instruction, Malformed):
                await self._trace.emit(exchange.id, "tool_malformed", {"reason": instruction.reason})
                yield self._event(EngineEventType.NOTICE, exchange, {
                    "kind": ErrorKind.MALFORMED_TOOL_CALL.value,
                    "reason": instruction.reason,
                })
            if isinstance(instruction, (NoEdit, Malformed)):
                session.is_streaming = False
                settled = history.settle()
                exchange.advance(ExchangeState.SETTLED)
                yield self._final(exchange, history, settled)
                return

            exchange.advance(ExchangeState.TOOL_DETECTED)
            edit_kind = "full" if isinstance(instruction, FullReplace) else "partial"
            yield self._event(EngineEventType.TOOL_CALL, exchange, {
                "name": EDIT_DOCUMENT,
                "kind": edit_kind,
            })
            token.raise_if_cancelled()

            # 3. Apply edit ----------------------------------------------
            stage = None
            if isinstance(instruction, FullReplace):
                new_content = instruction.html
            else:
                outcome = self._locator.apply(ledger.content, instruction.snippet, instruction.replacement)
                if isinstance(outcome, NotFound):
                    await self._trace.emit(exchange.id, "patch", {"status": "not_found"})
                    session.is_streaming = False
                    notice = history.finish_with_notice(EDIT_NOT_LOCATED_MESSAGE)
                    exchange.advance(ExchangeState.SETTLED)
                    yield self._event(EngineEventType.EDIT_FAILED, exchange, {
                        "kind": ErrorKind.EDIT_NOT_LOCATED.value,
                        "snippet": instruction.snippet[:200],
                    })
                    yield self._final(exchange, history, notice)
                    return
                new_content, stage = outcome.content, outcome.stage

            version = ledger.commit(new_content, reason=prompt)
            committed = True
            await self._trace.emit(exchange.id, "patch", {
                "status": "applied",
                "kind": edit_kind,
                "stage": stage.value if stage else None,
                "version_id": version.id,
            })
            yield self._event(EngineEventType.EDIT_APPLIED, exchange, {
                "version_id": version.id,
                "reason": version.reason,
                "kind": edit_kind,
                "stage": stage.value if stage else None,
            })

            message = history.update_placeholder(content=tool_usage_marker(EDIT_DOCUMENT))
            if message is not None:
                yield self._message_event(EngineEventType.MESSAGE, exchange, history, message)
            token.raise_if_cancelled()

            # 4. Reflection ----------------------------------------------
            exchange.advance(ExchangeState.AWAITING_REFLECTION)
            reflection_request = self._reflection.build_request(
                prior, prompt, accumulator.answer_text, describe_edit(instruction, stage), model,
            )
            t_ref = time.time()
            try:
                narration = self._reflection.narrate(reflection_request, message, token)
                async with aclosing(narration) as snapshots:
                    async for snapshot in snapshots:
                        message = history.update_placeholder(
                            snapshot.answer, snapshot.thinking, snapshot.thinking_started_at,
                        )
                        if message is not None:
                            yield self._message_event(EngineEventType.REFLECTION, exchange, history, message)
            except ExchangeCancelled:
                raise
            except Exception as exc:
                logger.warning("exchange %s: reflection failed: %s", exchange.id, exc)
                await self._trace.emit(exchange.id, "reflection", {"status": "error", "error": str(exc)})
                yield self._event(EngineEventType.NOTICE, exchange, {
                    "kind": "reflection_failed",
                    "category": classify_error(exc).category,
                })
            else:
                await self._trace.emit(exchange.id, "reflection", {
                    "status": "ok",
                    "latency_ms": round((time.time() - t_ref) * 1000, 2),
                })

            session.is_streaming = False
            settled = history.settle()
            exchange.advance(ExchangeState.SETTLED)
            yield self._final(exchange, history, settled)

        except ExchangeCancelled:
            kept = self._clean_up_cancelled(history, committed)
            removed = kept is None
            exchange.advance(ExchangeState.CANCELLED)
            logger.info("exchange %s cancelled (placeholder removed=%s)", exchange.id, removed)
            await self._trace.emit(exchange.id, "cancelled", {"placeholder_removed": removed})
            yield self._event(EngineEventType.CANCELLED, exchange, {
                "placeholder_removed": removed,
                "message": kept.model_dump(mode="json") if kept is not None else None,
            })

        except (GeneratorExit, asyncio.CancelledError):
            # Consumer went away mid-exchange; leave the history as a cancel would.
            token.cancel("consumer closed")
            self._clean_up_cancelled(history, committed)
            if not exchange.finished:
                exchange.advance(ExchangeState.CANCELLED)
            raise

        except Exception as exc:
            classified = classify_error(exc)
            logger.error(
                "exchange %s failed (%s): %s", exchange.id, classified.category, exc,
            )
            apology = history.replace_placeholder(APOLOGY_MESSAGE)
            if not exchange.finished:
                exchange.advance(ExchangeState.SETTLED)
            await self._trace.emit(exchange.id, "error", {
                "category": classified.category,
                "error": str(exc),
            })
            yield self._event(EngineEventType.ERROR, exchange, {
                "kind": ErrorKind.BACKEND_UNAVAILABLE.value,
                "category": classified.category,
                "user_message": classified.user_message,
                "retryable": classified.retryable,
                "retry_delay": classified.retry_delay,
                "message": apology.model_dump(mode="json"),
            })

        finally:
            session.is_loading = False
            session.is_streaming = False
            session.cancellation.finish(token)
            await self._trace.emit(exchange.id, "exchange_done", {
                "state": exchange.state.value,
                "total_latency_ms": round((time.time() - t_start) * 1000, 2),
            })
            await self._trace.flush(exchange.id)

    @staticmethod
    def _clean_up_cancelled(history: ConversationHistory, committed: bool) -> Message | None:
        """Drop the in-flight turn, or keep it as cancelled once an edit landed.

        A committed edit stays applied, so its marker message stays too.
        """
        if committed:
            return history.settle(TurnStatus.CANCELLED)
        history.remove_placeholder()
        return None

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _event(kind: EngineEventType, exchange: Exchange, data: dict[str, Any]) -> EngineEvent:
        return EngineEvent(type=kind, data=data, exchange_id=exchange.id)

    @staticmethod
    def _rejected(reason: str) -> EngineEvent:
        logger.info("request rejected: %s", reason)
        return EngineEvent(type=EngineEventType.REJECTED, data={"reason": reason})

    def _message_event(
        self, kind: EngineEventType, exchange: Exchange, history: ConversationHistory, message: Message
    ) -> EngineEvent:
        return self._event(kind, exchange, {
            "index": len(history) - 1,
            "message": message.model_dump(mode="json"),
        })

    def _final(self, exchange: Exchange, history: ConversationHistory, message: Message | None) -> EngineEvent:
        return self._event(EngineEventType.FINAL, exchange, {
            "index": len(history) - 1 if message is not None else None,
            "message": message.model_dump(mode="json") if message is not None else None,
        })
