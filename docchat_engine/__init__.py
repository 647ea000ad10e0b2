"""docchat_engine: streaming document Q&A with tool-driven edits and a version ledger.

Usage::

    from docchat_engine import AuthoringSession, create_engine

    engine = create_engine()
    session = AuthoringSession()
    engine.load_generated_document(session, "<p>Hello</p>")
    async for event in engine.send_message(session, "Make it friendlier"):
        print(event)
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()  # reads .env into os.environ (no-op if file missing)

from docchat_engine.engine.agent import DocChatEngine
from docchat_engine.engine.llm import DemoMockLLMClient, OpenAILLMClient
from docchat_engine.engine.models import EngineEvent, EngineEventType, EngineSettings
from docchat_engine.engine.session import AuthoringSession
from docchat_engine.tools.edit_document import default_registry
from docchat_engine.tracing.jsonl_tracer import JSONLTraceCollector

__all__ = [
    "AuthoringSession",
    "DocChatEngine",
    "EngineEvent",
    "EngineEventType",
    "EngineSettings",
    "create_engine",
]


def create_engine(
    *,
    openai_api_key: str | None = None,
    openai_model: str | None = None,
    trace_dir: str | None = None,
    use_mock_llm: bool | None = None,
    settings: EngineSettings | None = None,
) -> DocChatEngine:
    """Wire all components and return a ready-to-use DocChatEngine.

    Environment variables (all optional):
      OPENAI_API_KEY    : required for real LLM calls
      OPENAI_BASE_URL   : OpenAI-compatible endpoint
      OPENAI_MODEL      : default ``gpt-4o-mini``
      USE_MOCK_LLM      : set to ``1`` to use the demo mock
      DOCCHAT_TRACE_DIR : default ``./traces``
    """
    api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
    model = openai_model or os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
    mock = use_mock_llm if use_mock_llm is not None else os.environ.get("USE_MOCK_LLM") == "1"
    trace_dir = trace_dir or os.environ.get("DOCCHAT_TRACE_DIR", "./traces")

    settings = settings or EngineSettings(model=model)
    tool_registry = default_registry()
    trace_collector = JSONLTraceCollector(trace_dir)

    if mock or not api_key:
        llm_client = DemoMockLLMClient()
    else:
        llm_client = OpenAILLMClient(
            api_key=api_key,
            model=settings.model,
            base_url=os.environ.get("OPENAI_BASE_URL") or None,
            tool_registry=tool_registry,
        )

    return DocChatEngine(
        llm_client=llm_client,
        trace_collector=trace_collector,
        settings=settings,
        tool_registry=tool_registry,
    )
