from docchat_engine.engine.models import (
    ChatRequest,
    DocumentVersion,
    EngineEvent,
    EngineEventType,
    EngineSettings,
    GenerationOptions,
    Message,
    ReflectionRequest,
    Role,
    SelectionContext,
    StreamChunk,
    ToolCall,
    TurnStatus,
)
from docchat_engine.engine.session import AuthoringSession, InMemorySesStore, SesStore
from docchat_engine.engine.llm import DemoMockLLMClient, LLMClient, MockLLMClient, OpenAILLMClient
from docchat_engine.engine.agent import DocChatEngine

__all__ = [
    "AuthoringSession",
    "ChatRequest",
    "DemoMockLLMClient",
    "DocChatEngine",
    "DocumentVersion",
    "EngineEvent",
    "EngineEventType",
    "EngineSettings",
    "GenerationOptions",
    "InMemorySesStore",
    "LLMClient",
    "Message",
    "MockLLMClient",
    "OpenAILLMClient",
    "ReflectionRequest",
    "Role",
    "SelectionContext",
    "SesStore",
    "StreamChunk",
    "ToolCall",
    "TurnStatus",
]
