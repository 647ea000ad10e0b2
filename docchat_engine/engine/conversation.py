"""Conversation history: the message list and the per-exchange state machine."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum

from docchat_engine.engine.errors import HistoryOperationError, InvalidTransition
from docchat_engine.engine.models import Message, Role, TurnStatus

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


# ---------------------------------------------------------------------------
# Exchange state machine
# ---------------------------------------------------------------------------

class ExchangeState(str, Enum):
    IDLE = "idle"
    AWAITING_ANSWER = "awaiting_answer"
    TOOL_DETECTED = "tool_detected"
    AWAITING_REFLECTION = "awaiting_reflection"
    SETTLED = "settled"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[ExchangeState, set[ExchangeState]] = {
    ExchangeState.IDLE: {ExchangeState.AWAITING_ANSWER, ExchangeState.CANCELLED},
    ExchangeState.AWAITING_ANSWER: {
        ExchangeState.TOOL_DETECTED, ExchangeState.SETTLED, ExchangeState.CANCELLED,
    },
    ExchangeState.TOOL_DETECTED: {
        ExchangeState.AWAITING_REFLECTION, ExchangeState.SETTLED, ExchangeState.CANCELLED,
    },
    ExchangeState.AWAITING_REFLECTION: {ExchangeState.SETTLED, ExchangeState.CANCELLED},
    ExchangeState.SETTLED: set(),
    ExchangeState.CANCELLED: set(),
}


@dataclass
class Exchange:
    """One user send and everything it triggers."""

    prompt: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: ExchangeState = ExchangeState.IDLE

    @property
    def finished(self) -> bool:
        return self.state in (ExchangeState.SETTLED, ExchangeState.CANCELLED)

    def advance(self, target: ExchangeState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        logger.debug("exchange %s: %s -> %s", self.id, self.state.value, target.value)
        self.state = target


# ---------------------------------------------------------------------------
# History pruning (what the backend sees; the visible history is untouched)
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    return -(-len(text) // CHARS_PER_TOKEN)


def prune_history(
    messages: list[Message],
    max_turns: int = 10,
    max_tokens: int = 50_000,
) -> list[Message]:
    """Keep the last *max_turns* user turns, then drop oldest pairs over budget."""
    if not messages:
        return []

    # cut starts at the oldest kept user turn once there are more than max_turns
    cut = 0
    oldest_kept = len(messages)
    user_turns = 0
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == Role.USER:
            user_turns += 1
            if user_turns == max_turns:
                oldest_kept = i
            elif user_turns > max_turns:
                cut = oldest_kept
                break
    pruned = list(messages[cut:])

    total = sum(estimate_tokens(m.content) for m in pruned)
    while total > max_tokens and len(pruned) > 4:
        dropped = pruned.pop(0)
        total -= estimate_tokens(dropped.content)
        if pruned and pruned[0].role == Role.ASSISTANT:
            total -= estimate_tokens(pruned.pop(0).content)
    return pruned


def backend_view(
    messages: list[Message],
    max_turns: int = 10,
    max_tokens: int = 50_000,
) -> list[Message]:
    """Settled, non-empty user/assistant turns, pruned for the backend."""
    settled = [
        m for m in messages
        if not m.in_flight and m.role != Role.SYSTEM and m.content.strip()
    ]
    return prune_history(settled, max_turns=max_turns, max_tokens=max_tokens)


# ---------------------------------------------------------------------------
# History manager
# ---------------------------------------------------------------------------

class ConversationHistory:
    """Owns the ordered message list.

    While an exchange is in flight the list ends with exactly one assistant
    turn tagged ``pending``/``streaming``: the placeholder. Stream updates
    only ever touch that trailing turn.
    """

    def __init__(self, messages: list[Message] | None = None) -> None:
        self._messages: list[Message] = list(messages or [])

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    @property
    def placeholder(self) -> Message | None:
        if self._messages and self._messages[-1].role == Role.ASSISTANT and self._messages[-1].in_flight:
            return self._messages[-1]
        return None

    # -- context selection (edit / retry) ------------------------------------

    def context_before(self, index: int, role: Role) -> list[Message]:
        """Messages preceding *index*, which must hold a *role* turn."""
        if index < 0 or index >= len(self._messages):
            raise HistoryOperationError(f"no message at index {index}")
        if self._messages[index].role != role:
            raise HistoryOperationError(
                f"message {index} is a {self._messages[index].role.value} turn, "
                f"expected {role.value}"
            )
        return self._messages[:index]

    def prompting_user_index(self, index: int) -> int | None:
        """Nearest user turn before the assistant turn at *index*."""
        self.context_before(index, Role.ASSISTANT)
        for i in range(index - 1, -1, -1):
            if self._messages[i].role == Role.USER:
                return i
        return None

    # -- exchange transitions ------------------------------------------------

    def begin_turn(self, context: list[Message], prompt: str) -> None:
        """Replace history with *context* + user turn + placeholder."""
        if self.placeholder is not None:
            raise HistoryOperationError("an exchange is already in flight")
        self._messages = [
            *context,
            Message(role=Role.USER, content=prompt),
            Message(role=Role.ASSISTANT, status=TurnStatus.PENDING),
        ]

    def update_placeholder(
        self,
        content: str | None = None,
        thinking: str | None = None,
        thinking_started_at: float | None = None,
    ) -> Message | None:
        current = self.placeholder
        if current is None:
            return None
        update: dict = {"status": TurnStatus.STREAMING}
        if content is not None:
            update["content"] = content
        if thinking:
            update["thinking"] = thinking
            if thinking_started_at is not None:
                update["thinking_started_at"] = thinking_started_at
        updated = current.model_copy(update=update)
        self._messages[-1] = updated
        return updated

    def settle(self, status: TurnStatus = TurnStatus.SETTLED) -> Message | None:
        """Freeze the placeholder; an empty one is dropped instead."""
        current = self.placeholder
        if current is None:
            return None
        if not current.content:
            self._messages.pop()
            return None
        settled = current.model_copy(update={"status": status})
        self._messages[-1] = settled
        return settled

    def remove_placeholder(self) -> bool:
        """Drop the in-flight turn, partial answer included."""
        if self.placeholder is None:
            return False
        self._messages.pop()
        return True

    def replace_placeholder(self, content: str) -> Message:
        message = Message(role=Role.ASSISTANT, content=content)
        if self.placeholder is not None:
            self._messages[-1] = message
        else:
            self._messages.append(message)
        return message

    def finish_with_notice(self, content: str) -> Message:
        """End the turn with an assistant notice, keeping any streamed answer."""
        current = self.placeholder
        if current is not None and current.content:
            self.settle()
            message = Message(role=Role.ASSISTANT, content=content)
            self._messages.append(message)
            return message
        return self.replace_placeholder(content)

    def reset(self) -> None:
        self._messages = []
