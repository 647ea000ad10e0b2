"""Tool-call resolver: classifies the edit instruction carried by a response."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from pydantic import ValidationError

from docchat_engine.engine.models import ToolCall
from docchat_engine.tools.edit_document import EDIT_DOCUMENT, EditDocumentInput
from docchat_engine.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoEdit:
    pass


@dataclass(frozen=True)
class FullReplace:
    html: str


@dataclass(frozen=True)
class PartialReplace:
    snippet: str
    replacement: str


@dataclass(frozen=True)
class Malformed:
    reason: str
    call: ToolCall


EditInstruction = Union[NoEdit, FullReplace, PartialReplace, Malformed]


def resolve_edit(
    tool_calls: list[ToolCall] | None,
    registry: ToolRegistry | None = None,
) -> EditInstruction:
    """Classify the first ``edit_document`` call in *tool_calls*.

    Later edit calls in the same response are ignored. Empty strings count as
    absent. A call that carries both shapes, neither, or a snippet without
    a replacement is ``Malformed``.
    """
    call = next((tc for tc in tool_calls or [] if tc.name == EDIT_DOCUMENT), None)
    if call is None:
        return NoEdit()

    extra = sum(1 for tc in tool_calls or [] if tc.name == EDIT_DOCUMENT) - 1
    if extra:
        logger.info("ignoring %d additional %s call(s)", extra, EDIT_DOCUMENT)

    try:
        if registry is not None and registry.get(EDIT_DOCUMENT) is not None:
            args = registry.validate(EDIT_DOCUMENT, call.args)
        else:
            args = EditDocumentInput.model_validate(call.args)
    except ValidationError as exc:
        return _malformed(call, f"invalid arguments: {exc.error_count()} error(s)")

    full = args.full_document_html or None
    snippet = args.html_snippet_to_replace or None
    replacement = args.replacement_html

    if full is not None and snippet is not None:
        return _malformed(call, "both full_document_html and html_snippet_to_replace given")
    if full is not None:
        return FullReplace(full)
    if snippet is not None:
        if replacement is None:
            return _malformed(call, "html_snippet_to_replace given without replacement_html")
        return PartialReplace(snippet, replacement)
    return _malformed(call, "no edit arguments")


def _malformed(call: ToolCall, reason: str) -> Malformed:
    logger.warning("malformed %s call (id=%s): %s", call.name, call.id, reason)
    return Malformed(reason, call)
