"""Core data models: no internal dependencies, only Pydantic + stdlib."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TurnStatus(str, Enum):
    """Lifecycle tag of a turn. Only assistant turns ever leave SETTLED."""
    PENDING = "pending"
    STREAMING = "streaming"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class Message(BaseModel):
    """One conversational turn."""
    role: Role
    content: str = ""
    thinking: str | None = None
    thinking_started_at: float | None = None
    status: TurnStatus = TurnStatus.SETTLED

    @property
    def in_flight(self) -> bool:
        return self.status in (TurnStatus.PENDING, TurnStatus.STREAMING)


class SelectionContext(BaseModel):
    """Text the user highlighted in the editor, forwarded to the backend."""
    selected_text: str = ""
    selected_html: str = ""
    start_line: int | None = None
    end_line: int | None = None


# ---------------------------------------------------------------------------
# Document ledger
# ---------------------------------------------------------------------------

class DocumentVersion(BaseModel):
    """Immutable snapshot of the edited document."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: int  # epoch milliseconds
    content: str
    reason: str


# ---------------------------------------------------------------------------
# Backend stream
# ---------------------------------------------------------------------------

class ToolCall(BaseModel):
    """A single tool/function call requested by the backend."""
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None


class StreamChunk(BaseModel):
    """One fragment of a streamed backend response."""
    answer_delta: str | None = None
    thinking_delta: str | None = None
    tool_calls: list[ToolCall] | None = None
    is_final: bool = False


class GenerationOptions(BaseModel):
    temperature: float | None = None
    max_output_tokens: int | None = None
    include_thoughts: bool = True


class ChatRequest(BaseModel):
    """Arguments of the primary stream."""
    history: list[Message] = Field(default_factory=list)
    user_message: str
    document_html: str = ""
    selection: SelectionContext | None = None
    source_documents: list[str] = Field(default_factory=list)
    model: str
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class ReflectionRequest(BaseModel):
    """Arguments of the narration stream that follows an applied edit."""
    history: list[Message] = Field(default_factory=list)
    tool_result: str
    model: str


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    """Tunables. Defaults mirror what the authoring UI ships with."""
    model: str = "gpt-4o-mini"
    generation: GenerationOptions = Field(default_factory=GenerationOptions)
    max_history_turns: int = 10
    max_history_tokens: int = 50_000
    anchor_length: int = 50
    relaxed_search_limit: int = 200_000


# ---------------------------------------------------------------------------
# Outbound events (engine → adapter)
# ---------------------------------------------------------------------------

class EngineEventType(str, Enum):
    STARTED = "started"
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    EDIT_APPLIED = "edit_applied"
    EDIT_FAILED = "edit_failed"
    REFLECTION = "reflection"
    NOTICE = "notice"
    FINAL = "final"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    ERROR = "error"


class EngineEvent(BaseModel):
    type: EngineEventType
    data: dict[str, Any] = Field(default_factory=dict)
    exchange_id: str = ""
    timestamp: float = Field(default_factory=time.time)
