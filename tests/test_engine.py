"""Tests for DocChatEngine: exchanges, edits, reflection and cancellation."""

from __future__ import annotations

import asyncio
import json

import pytest

from docchat_engine.engine.agent import DocChatEngine
from docchat_engine.engine.conversation import ConversationHistory
from docchat_engine.engine.llm import HOLD, MockLLMClient
from docchat_engine.engine.models import (
    ChatRequest,
    EngineEventType,
    Message,
    ReflectionRequest,
    Role,
    StreamChunk,
    ToolCall,
    TurnStatus,
)
from docchat_engine.prompts import (
    APOLOGY_MESSAGE,
    EDIT_NOT_LOCATED_MESSAGE,
    TOOL_PLACEHOLDER_ANSWER,
    tool_usage_marker,
)

MARKER = tool_usage_marker("edit_document")


async def collect(events):
    return [event async for event in events]


def types(events):
    return [e.type for e in events]


def partial_edit(snippet, replacement, answer=None):
    chunks = []
    if answer:
        chunks.append(StreamChunk(answer_delta=answer))
    chunks.append(StreamChunk(is_final=True, tool_calls=[ToolCall(
        id="tc-1",
        name="edit_document",
        args={"html_snippet_to_replace": snippet, "replacement_html": replacement},
    )]))
    return chunks


def narration(text):
    return [StreamChunk(answer_delta=text), StreamChunk(is_final=True)]


class TestPlainAnswer:
    async def test_streamed_answer_settles(self, make_engine, session):
        engine, llm = make_engine([[
            StreamChunk(thinking_delta="Considering. "),
            StreamChunk(answer_delta="Hello"),
            StreamChunk(answer_delta=" there."),
            StreamChunk(is_final=True),
        ]])
        events = await collect(engine.send_message(session, "Hi"))

        assert types(events)[0] == EngineEventType.STARTED
        assert types(events)[-1] == EngineEventType.FINAL
        assert types(events).count(EngineEventType.MESSAGE) == 3
        assert [m.content for m in session.history.messages] == ["Hi", "Hello there."]
        reply = session.history[-1]
        assert reply.status == TurnStatus.SETTLED
        assert reply.thinking == "Considering. "
        assert reply.thinking_started_at is not None
        assert session.is_loading is False
        assert llm.call_count == 1

    async def test_request_carries_document_and_history(self, make_engine, session):
        engine, llm = make_engine([narration("first"), narration("second")])
        engine.load_generated_document(session, "<p>Doc</p>")
        session.source_documents = ["notes.txt"]
        await collect(engine.send_message(session, "one"))
        await collect(engine.send_message(session, "two"))

        request = llm.requests[1]
        assert isinstance(request, ChatRequest)
        assert request.document_html == "<p>Doc</p>"
        assert request.user_message == "two"
        assert request.source_documents == ["notes.txt"]
        assert [m.content for m in request.history] == ["one", "first"]

    async def test_pending_input_used_and_cleared(self, make_engine, session):
        engine, _ = make_engine([narration("ok")])
        session.pending_input = "from the input box"
        await collect(engine.send_message(session))
        assert session.history[0].content == "from the input box"
        assert session.pending_input == ""

    async def test_empty_input_is_noop(self, make_engine, session):
        engine, llm = make_engine([])
        assert await collect(engine.send_message(session, "   ")) == []
        assert len(session.history) == 0
        assert llm.call_count == 0

    async def test_no_chunks_removes_placeholder(self, make_engine, session):
        engine, _ = make_engine([[]])
        events = await collect(engine.send_message(session, "Hi"))
        assert events[-1].type == EngineEventType.FINAL
        assert events[-1].data["message"] is None
        assert [m.role for m in session.history.messages] == [Role.USER]


class TestEdits:
    async def test_partial_edit_commits_with_prompt_reason(self, make_engine, session):
        engine, llm = make_engine([
            partial_edit("The cat sat.", "The dog ran.", answer="Updating the sentence."),
            narration("I swapped the cat for a dog."),
        ])
        engine.load_generated_document(session, "<p>The cat sat.</p>")

        events = await collect(engine.send_message(session, "Make it a dog"))

        assert session.ledger.content == "<p>The dog ran.</p>"
        assert len(session.ledger) == 2
        assert session.ledger.current.reason == "Make it a dog"
        kinds = types(events)
        assert kinds.index(EngineEventType.TOOL_CALL) < kinds.index(EngineEventType.EDIT_APPLIED)
        assert kinds.index(EngineEventType.EDIT_APPLIED) < kinds.index(EngineEventType.REFLECTION)
        applied = next(e for e in events if e.type == EngineEventType.EDIT_APPLIED)
        assert applied.data["kind"] == "partial"
        assert applied.data["stage"] == "exact"

        reply = session.history[-1]
        assert reply.content == MARKER + "I swapped the cat for a dog."
        assert reply.status == TurnStatus.SETTLED

        reflection = llm.requests[1]
        assert isinstance(reflection, ReflectionRequest)
        assert reflection.history[-1].content == "Updating the sentence."
        assert "partial replacement" in reflection.tool_result

    async def test_full_document_replaces_content(self, make_engine, session):
        engine, llm = make_engine([
            [StreamChunk(is_final=True, tool_calls=[ToolCall(
                name="edit_document", args={"full_document_html": "<p>X</p>"},
            )])],
            narration("Rewrote it."),
        ])
        engine.load_generated_document(session, "<h1>Anything</h1><p>at all</p>")

        await collect(engine.send_message(session, "Rewrite"))

        assert session.ledger.content == "<p>X</p>"
        assert session.ledger.versions[-1].content == "<p>X</p>"
        assert llm.requests[1].history[-1].content == TOOL_PLACEHOLDER_ANSWER

    async def test_normalized_match_commits(self, make_engine, session):
        engine, _ = make_engine([
            partial_edit("<p>the cat sat.</p>", "<p>The dog ran.</p>"),
            narration("Done."),
        ])
        engine.load_generated_document(session, "<div><p>The  cat sat.</p></div>")
        events = await collect(engine.send_message(session, "dog"))
        assert session.ledger.content == "<div><p>The dog ran.</p></div>"
        applied = next(e for e in events if e.type == EngineEventType.EDIT_APPLIED)
        assert applied.data["stage"] == "normalized"

    async def test_not_located_leaves_document_untouched(self, make_engine, session):
        engine, llm = make_engine([partial_edit("missing text", "new", answer="Editing.")])
        engine.load_generated_document(session, "<p>Original</p>")

        events = await collect(engine.send_message(session, "change it"))

        assert session.ledger.content == "<p>Original</p>"
        assert len(session.ledger) == 1
        assert EngineEventType.EDIT_FAILED in types(events)
        assert [m.content for m in session.history.messages] == [
            "change it", "Editing.", EDIT_NOT_LOCATED_MESSAGE,
        ]
        assert llm.call_count == 1

    async def test_malformed_call_is_a_normal_answer(self, make_engine, session):
        engine, llm = make_engine([[
            StreamChunk(answer_delta="Here you go."),
            StreamChunk(is_final=True, tool_calls=[ToolCall(name="edit_document", args={})]),
        ]])
        engine.load_generated_document(session, "<p>Doc</p>")

        events = await collect(engine.send_message(session, "edit"))

        notice = next(e for e in events if e.type == EngineEventType.NOTICE)
        assert notice.data["kind"] == "malformed_tool_call"
        assert events[-1].type == EngineEventType.FINAL
        assert session.history[-1].content == "Here you go."
        assert len(session.ledger) == 1
        assert llm.call_count == 1

    async def test_reflection_failure_keeps_edit_and_marker(self, make_engine, session):
        engine, _ = make_engine([
            partial_edit("cat", "dog"),
            [ConnectionError("reflection stream dropped")],
        ])
        engine.load_generated_document(session, "<p>cat</p>")

        events = await collect(engine.send_message(session, "dog please"))

        assert session.ledger.content == "<p>dog</p>"
        notice = next(e for e in events if e.type == EngineEventType.NOTICE)
        assert notice.data == {"kind": "reflection_failed", "category": "network"}
        assert EngineEventType.ERROR not in types(events)
        assert session.history[-1].content == MARKER
        assert session.history[-1].status == TurnStatus.SETTLED


class TestBackendErrors:
    async def test_primary_failure_becomes_apology(self, make_engine, session):
        engine, _ = make_engine([[
            StreamChunk(answer_delta="Half"),
            RuntimeError("Error code: 503 - overloaded"),
        ]])
        events = await collect(engine.send_message(session, "Hi"))

        error = events[-1]
        assert error.type == EngineEventType.ERROR
        assert error.data["kind"] == "backend_unavailable"
        assert error.data["category"] == "transient"
        assert error.data["retryable"] is True
        assert [m.content for m in session.history.messages] == ["Hi", APOLOGY_MESSAGE]
        assert session.is_loading is False
        assert session.cancellation.current is None


class TestCancellation:
    async def test_stop_mid_stream_drops_placeholder(self, make_engine, session):
        engine, llm = make_engine([[StreamChunk(answer_delta="Partial"), HOLD]])
        events = []

        async def run():
            async for event in engine.send_message(session, "Hi"):
                events.append(event)

        task = asyncio.create_task(run())
        for _ in range(100):
            if session.history.placeholder is not None and session.history[-1].content:
                break
            await asyncio.sleep(0.01)
        assert engine.stop(session) is True
        await asyncio.wait_for(task, timeout=2)

        assert events[-1].type == EngineEventType.CANCELLED
        assert events[-1].data["placeholder_removed"] is True
        messages = session.history.messages
        assert messages[-1].role == Role.USER
        assert not any(m.role == Role.ASSISTANT and not m.content for m in messages)
        assert llm.closed_streams == 1
        assert session.is_loading is False

    async def test_stop_after_commit_skips_reflection(self, make_engine, session):
        engine, llm = make_engine([partial_edit("cat", "dog"), narration("never requested")])
        engine.load_generated_document(session, "<p>cat</p>")

        events = []
        async for event in engine.send_message(session, "dog"):
            events.append(event)
            if event.type == EngineEventType.EDIT_APPLIED:
                engine.stop(session)

        assert events[-1].type == EngineEventType.CANCELLED
        assert EngineEventType.REFLECTION not in types(events)
        assert session.ledger.content == "<p>dog</p>"
        assert llm.call_count == 1
        reply = session.history[-1]
        assert reply.content == MARKER
        assert reply.status == TurnStatus.CANCELLED

    async def test_stop_on_detected_tool_call_skips_edit(self, make_engine, session):
        engine, llm = make_engine([partial_edit("cat", "dog"), narration("never requested")])
        engine.load_generated_document(session, "<p>cat</p>")

        events = []
        async for event in engine.send_message(session, "dog"):
            events.append(event)
            if event.type == EngineEventType.TOOL_CALL:
                engine.stop(session)

        assert types(events) == [
            EngineEventType.STARTED, EngineEventType.TOOL_CALL, EngineEventType.CANCELLED,
        ]
        assert session.ledger.content == "<p>cat</p>"
        assert len(session.ledger) == 1
        assert llm.call_count == 1
        assert [m.role for m in session.history.messages] == [Role.USER]

    async def test_task_cancel_closes_backend_stream(self, make_engine, session):
        engine, llm = make_engine([[StreamChunk(answer_delta="Partial"), HOLD]])

        async def run():
            async for _ in engine.send_message(session, "Hi"):
                pass

        task = asyncio.create_task(run())
        for _ in range(100):
            if session.history.placeholder is not None and session.history[-1].content:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.01)

        assert llm.closed_streams == 1
        current = asyncio.current_task()
        assert [t for t in asyncio.all_tasks() if t is not current and not t.done()] == []
        assert session.history[-1].role == Role.USER
        assert session.is_loading is False

    async def test_stop_without_exchange(self, make_engine, session):
        engine, _ = make_engine([])
        assert engine.stop(session) is False

    async def test_consumer_closing_counts_as_cancel(self, make_engine, session):
        engine, _ = make_engine([[StreamChunk(answer_delta="Partial"), HOLD]])
        agen = engine.send_message(session, "Hi")
        async for event in agen:
            if event.type == EngineEventType.MESSAGE:
                break
        await agen.aclose()

        assert session.history[-1].role == Role.USER
        assert session.is_loading is False


class TestConcurrency:
    async def test_send_while_loading_is_rejected(self, make_engine, session):
        engine, llm = make_engine([[StreamChunk(answer_delta="Working"), HOLD]])
        first = engine.send_message(session, "first")
        async for event in first:
            if event.type == EngineEventType.MESSAGE:
                break

        events = await collect(engine.send_message(session, "second"))
        assert types(events) == [EngineEventType.REJECTED]
        assert llm.call_count == 1
        await first.aclose()


class TestHistoryOperations:
    @pytest.fixture
    def seeded(self, session):
        session.history.begin_turn([], "u0")
        session.history.update_placeholder("a0")
        session.history.settle()
        session.history.begin_turn(session.history.messages, "u1")
        session.history.update_placeholder("a1")
        session.history.settle()
        return session

    async def test_edit_role_mismatch_rejected(self, make_engine, seeded):
        engine, llm = make_engine([])
        events = await collect(engine.edit_message(seeded, 1, "nope"))
        assert types(events) == [EngineEventType.REJECTED]
        assert [m.content for m in seeded.history.messages] == ["u0", "a0", "u1", "a1"]
        assert llm.call_count == 0

    async def test_edit_truncates_and_resends(self, make_engine, seeded):
        engine, llm = make_engine([narration("new answer")])
        await collect(engine.edit_message(seeded, 2, "u1 edited"))
        assert [m.content for m in seeded.history.messages] == ["u0", "a0", "u1 edited", "new answer"]
        assert [m.content for m in llm.requests[0].history] == ["u0", "a0"]

    async def test_retry_user_message(self, make_engine, seeded):
        engine, _ = make_engine([narration("again")])
        await collect(engine.retry_user_message(seeded, 0))
        assert [m.content for m in seeded.history.messages] == ["u0", "again"]

    async def test_retry_assistant_message(self, make_engine, seeded):
        engine, llm = make_engine([narration("a1 v2")])
        await collect(engine.retry_assistant_message(seeded, 3))
        assert [m.content for m in seeded.history.messages] == ["u0", "a0", "u1", "a1 v2"]
        assert llm.requests[0].user_message == "u1"

    async def test_retry_assistant_without_prior_user(self, make_engine, session):
        session.history = ConversationHistory([Message(role=Role.ASSISTANT, content="hello")])
        engine, llm = make_engine([])
        assert await collect(engine.retry_assistant_message(session, 0)) == []
        assert llm.call_count == 0

    async def test_reset_keeps_ledger(self, make_engine, seeded):
        engine, _ = make_engine([])
        engine.load_generated_document(seeded, "<p>keep</p>")
        seeded.pending_input = "draft"
        engine.reset(seeded)
        assert len(seeded.history) == 0
        assert seeded.pending_input == ""
        assert seeded.ledger.content == "<p>keep</p>"


class TestLedgerOperations:
    async def test_save_and_snapshot(self, make_engine, session):
        engine, _ = make_engine([])
        first = engine.load_generated_document(session, "<p>a</p>")
        assert engine.save_version(session, "<p>a</p>") is None
        saved = engine.save_version(session, "<p>b</p>")
        engine.preview_version(session, first.id)

        snap = engine.snapshot(session)
        assert snap["document"] == "<p>a</p>"
        assert snap["current_version_id"] == saved.id
        assert snap["preview_version_id"] == first.id
        assert [v["reason"] for v in snap["versions"]] == ["Initial generation", "Manual save"]

        engine.exit_preview(session)
        engine.mark_document_dirty(session)
        assert engine.snapshot(session)["dirty"] is True
        assert engine.revert_version(session, first.id) == first
        assert engine.delete_version(session, first.id) is True
        assert session.ledger.content == ""


class TestTracing:
    async def test_exchange_trace_written_per_session(self, make_engine, session, tmp_path):
        engine, _ = make_engine([narration("ok")])
        await collect(engine.send_message(session, "Hi"))

        path = tmp_path / "traces" / "test-session.jsonl"
        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert lines[0]["event"] == "exchange_start"
        assert lines[-1]["event"] == "exchange_done"
        assert lines[-1]["state"] == "settled"


async def test_engine_without_trace_collector(session):
    engine = DocChatEngine(llm_client=MockLLMClient([narration("untraced")]))
    events = await collect(engine.send_message(session, "Hi"))
    assert events[-1].type == EngineEventType.FINAL
    assert session.history[-1].content == "untraced"
