"""Error taxonomy for the exchange pipeline and backend error classification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    CANCELLED = "cancelled"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    EDIT_NOT_LOCATED = "edit_not_located"
    MALFORMED_TOOL_CALL = "malformed_tool_call"
    NO_CHANGES_TO_SAVE = "no_changes_to_save"


class DocChatError(Exception):
    """Base class for errors raised by docchat_engine."""

    kind: ErrorKind | None = None


class ExchangeCancelled(DocChatError):
    """The user stopped the exchange. Never surfaced as an error."""

    kind = ErrorKind.CANCELLED


class BackendUnavailable(DocChatError):
    """The generative backend failed while streaming."""

    kind = ErrorKind.BACKEND_UNAVAILABLE


class HistoryOperationError(DocChatError, ValueError):
    """An edit/retry targeted a message it cannot apply to."""


class InvalidTransition(DocChatError, RuntimeError):
    """An exchange was moved to a state its current state cannot reach."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClassifiedError:
    category: str  # rate_limit | context_overflow | auth | network | transient | unknown
    user_message: str
    retryable: bool
    retry_delay: float | None = None


_RULES: list[tuple[tuple[str, ...], ClassifiedError]] = [
    (
        ("429", "resource_exhausted", "rate limit", "quota"),
        ClassifiedError("rate_limit", "Rate limit reached. Try again in a few seconds.", True, 5.0),
    ),
    (
        ("exceeds the maximum", "context length", "context_length", "too many tokens",
         "token limit", "request too large"),
        ClassifiedError("context_overflow", "Context too large. Try a shorter conversation or document.", True, 0.0),
    ),
    (
        ("401", "403", "permission_denied", "unauthorized", "api key", "authentication"),
        ClassifiedError("auth", "API key issue. Please check your API key in settings.", False),
    ),
    (
        ("failed to fetch", "network", "connection", "econnrefused", "enotfound", "timeout", "timed out"),
        ClassifiedError("network", "Network error. Check your connection and try again.", True, 2.0),
    ),
    (
        ("500", "502", "503", "internal", "unavailable", "overloaded"),
        ClassifiedError("transient", "Server error. Please retry.", True, 3.0),
    ),
]

_UNKNOWN = ClassifiedError("unknown", "An unexpected error occurred. Please try again.", False)


def classify_error(exc: BaseException) -> ClassifiedError:
    """Map a backend failure to an actionable category.

    Looks at the exception text and its cause chain, first rule wins.
    """
    parts: list[str] = []
    current: BaseException | None = exc
    while current is not None and len(parts) < 5:
        if isinstance(current, DocChatError):
            parts.append(str(current))
        else:
            parts.append(f"{type(current).__name__} {current}")
        current = current.__cause__
    text = " ".join(parts).lower()

    for needles, classified in _RULES:
        if any(n in text for n in needles):
            return classified
    return _UNKNOWN
