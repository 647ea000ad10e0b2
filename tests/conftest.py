"""Shared fixtures for docchat_engine tests."""

from __future__ import annotations

import pytest

from docchat_engine.engine.agent import DocChatEngine
from docchat_engine.engine.ledger import VersionLedger
from docchat_engine.engine.llm import MockLLMClient
from docchat_engine.engine.session import AuthoringSession, InMemorySesStore
from docchat_engine.tools.edit_document import default_registry
from docchat_engine.tracing.jsonl_tracer import JSONLTraceCollector


@pytest.fixture
def tool_registry():
    return default_registry()


@pytest.fixture
def ses_store():
    return InMemorySesStore()


@pytest.fixture
def trace_collector(tmp_path):
    return JSONLTraceCollector(trace_dir=str(tmp_path / "traces"))


@pytest.fixture
def ledger():
    ticks = iter(range(1_000, 1_000_000, 10))
    return VersionLedger(clock=lambda: next(ticks))


@pytest.fixture
def session():
    return AuthoringSession(session_id="test-session")


@pytest.fixture
def make_engine(trace_collector, tool_registry):
    """Build an engine around a MockLLMClient playing *scripts*."""

    def _make(scripts, **kwargs):
        llm = MockLLMClient(scripts, **kwargs)
        engine = DocChatEngine(
            llm_client=llm,
            trace_collector=trace_collector,
            tool_registry=tool_registry,
        )
        return engine, llm

    return _make
