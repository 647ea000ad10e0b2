"""Patch locator: finds the document span a snippet refers to.

Each stage is a plain function ``(content, snippet) -> Located | None`` so
stages can be tested and reordered independently. ``PatchLocator`` runs them
in order and the first hit wins. When every stage misses, the caller gets
``NotFound`` and the document stays untouched.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_ANCHOR_LENGTH = 50
DEFAULT_RELAXED_SEARCH_LIMIT = 200_000


class MatchStage(str, Enum):
    EXACT = "exact"
    NORMALIZED = "normalized"
    RELAXED = "relaxed"


@dataclass(frozen=True)
class Located:
    stage: MatchStage
    start: int
    end: int


@dataclass(frozen=True)
class Patched:
    content: str
    stage: MatchStage
    start: int
    end: int


@dataclass(frozen=True)
class NotFound:
    snippet: str


PatchResult = Union[Patched, NotFound]
Stage = Callable[[str, str], "Located | None"]


# ---------------------------------------------------------------------------
# Stage 1: exact substring
# ---------------------------------------------------------------------------

def find_exact(content: str, snippet: str) -> Located | None:
    if not content or not snippet:
        return None
    index = content.find(snippet)
    if index == -1:
        return None
    return Located(MatchStage.EXACT, index, index + len(snippet))


# ---------------------------------------------------------------------------
# Stage 2: normalized plain text
# ---------------------------------------------------------------------------

def normalize_markup(markup: str) -> tuple[str, list[int]]:
    """Strip tags, collapse whitespace and lower-case *markup*.

    Returns the normalized text and, for every normalized character, the
    index of the raw character it came from. A collapsed space maps to the
    raw character that follows it.
    """
    chars: list[str] = []
    offsets: list[int] = []
    pending_space = False
    i = 0
    n = len(markup)
    while i < n:
        ch = markup[i]
        if ch == "<":
            close = markup.find(">", i + 1)
            if close != -1:
                pending_space = True
                i = close + 1
                continue
        if ch.isspace():
            pending_space = True
            i += 1
            continue
        if pending_space and chars:
            chars.append(" ")
            offsets.append(i)
        pending_space = False
        for lowered in ch.lower():
            chars.append(lowered)
            offsets.append(i)
        i += 1
    return "".join(chars), offsets


_TAG_AT_START = re.compile(r"\s*<[^>]*>")
_TAG_AT_END = re.compile(r"<[^>]*>\s*$")


def _count_edge_tags(snippet: str) -> tuple[int, int]:
    lead = 0
    pos = 0
    while True:
        m = _TAG_AT_START.match(snippet, pos)
        if m is None:
            break
        lead += 1
        pos = m.end()
    trail = 0
    end = len(snippet)
    while end > pos:
        m = _TAG_AT_END.search(snippet, pos, end)
        if m is None:
            break
        trail += 1
        end = m.start()
    return lead, trail


def _widen_over_tags(content: str, start: int, end: int, lead: int, trail: int) -> tuple[int, int]:
    """Extend [start, end) over up to *lead*/*trail* adjacent tags."""
    for _ in range(lead):
        probe = start
        while probe > 0 and content[probe - 1].isspace():
            probe -= 1
        if probe == 0 or content[probe - 1] != ">":
            break
        opening = content.rfind("<", 0, probe - 1)
        if opening == -1:
            break
        start = opening
    for _ in range(trail):
        probe = end
        while probe < len(content) and content[probe].isspace():
            probe += 1
        if probe >= len(content) or content[probe] != "<":
            break
        closing = content.find(">", probe + 1)
        if closing == -1:
            break
        end = closing + 1
    return start, end


def find_normalized(
    content: str,
    snippet: str,
    anchor_length: int = DEFAULT_ANCHOR_LENGTH,
) -> Located | None:
    """Locate *snippet* by comparing tag-free, whitespace- and case-folded text.

    The first *anchor_length* normalized characters pick candidate positions.
    A candidate counts only when the whole normalized snippet matches there.
    """
    if not content or not snippet:
        return None
    norm_snippet, _ = normalize_markup(snippet)
    if not norm_snippet:
        return None
    norm_doc, offsets = normalize_markup(content)

    anchor = norm_snippet[:anchor_length]
    index = norm_doc.find(anchor)
    while index != -1:
        if norm_doc.startswith(norm_snippet, index):
            raw_start = offsets[index]
            raw_end = offsets[index + len(norm_snippet) - 1] + 1
            lead, trail = _count_edge_tags(snippet)
            raw_start, raw_end = _widen_over_tags(content, raw_start, raw_end, lead, trail)
            return Located(MatchStage.NORMALIZED, raw_start, raw_end)
        index = norm_doc.find(anchor, index + 1)
    return None


# ---------------------------------------------------------------------------
# Stage 3: relaxed regex
# ---------------------------------------------------------------------------

_RELAXED_TOKENS = re.compile(r"(\s+|<|>)")


def relaxed_pattern(snippet: str) -> re.Pattern[str] | None:
    """Regex for *snippet* with loose whitespace and entity-tolerant brackets."""
    pieces: list[str] = []
    for token in _RELAXED_TOKENS.split(snippet.strip()):
        if not token:
            continue
        if token.isspace():
            pieces.append(r"\s*")
        elif token == "<":
            pieces.append(r"(?:<|&lt;)")
        elif token == ">":
            pieces.append(r"(?:>|&gt;)")
        else:
            pieces.append(re.escape(token))
    if not pieces:
        return None
    return re.compile("".join(pieces), re.IGNORECASE)


def find_relaxed(
    content: str,
    snippet: str,
    search_limit: int = DEFAULT_RELAXED_SEARCH_LIMIT,
) -> Located | None:
    if not content or not snippet:
        return None
    pattern = relaxed_pattern(snippet)
    if pattern is None:
        return None
    match = pattern.search(content, 0, min(len(content), search_limit))
    if match is None or match.end() == match.start():
        return None
    return Located(MatchStage.RELAXED, match.start(), match.end())


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------

class PatchLocator:
    """Runs the match stages in order and splices in the replacement."""

    def __init__(
        self,
        stages: Sequence[Stage] | None = None,
        *,
        anchor_length: int = DEFAULT_ANCHOR_LENGTH,
        relaxed_search_limit: int = DEFAULT_RELAXED_SEARCH_LIMIT,
    ) -> None:
        if stages is None:
            stages = [
                find_exact,
                partial(find_normalized, anchor_length=anchor_length),
                partial(find_relaxed, search_limit=relaxed_search_limit),
            ]
        self._stages = list(stages)

    def locate(self, content: str, snippet: str) -> Located | None:
        for stage in self._stages:
            located = stage(content, snippet)
            if located is not None:
                return located
        return None

    def apply(self, content: str, snippet: str, replacement: str) -> PatchResult:
        located = self.locate(content, snippet)
        if located is None:
            logger.info("snippet not located (%d chars)", len(snippet))
            return NotFound(snippet)
        logger.info(
            "snippet located stage=%s span=[%d, %d)",
            located.stage.value, located.start, located.end,
        )
        patched = content[:located.start] + replacement + content[located.end:]
        return Patched(patched, located.stage, located.start, located.end)
